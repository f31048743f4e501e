"""
Prediction cache of the boosting trainer.

For every (output, row) pair the cache keeps the raw ensemble output computed
so far and the ensemble length ("step") that value reflects. Bringing a row
up to date only scores the trees appended since its step, which is valid
because ensembles are append-only.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .archive import Archive
from .model import predict_raw_ensemble
from .tree import RegressionTreeNode


def task_ranges(count: int, thread_count: int) -> List[Tuple[int, int]]:
    """
    Split [0, count) into at most ``thread_count`` contiguous ranges.

    Range sizes differ by at most one; empty ranges are omitted.
    """
    base, extra = divmod(count, thread_count)
    ranges = []
    start = 0
    for task in range(thread_count):
        size = base + (1 if task < extra else 0)
        if size > 0:
            ranges.append((start, start + size))
        start += size
    return ranges


def run_partitioned(count: int, thread_count: int, worker: Callable[[int, int], None]) -> None:
    """
    Run ``worker(start, stop)`` over contiguous ranges of [0, count).

    Returns once every range is processed; the first worker exception is
    re-raised.
    """
    ranges = task_ranges(count, thread_count)
    if thread_count == 1 or len(ranges) <= 1:
        for start, stop in ranges:
            worker(start, stop)
        return

    with ThreadPoolExecutor(max_workers=thread_count) as executor:
        futures = [executor.submit(worker, start, stop) for start, stop in ranges]
        for future in futures:
            future.result()


class PredictionCache:
    """
    Accumulated raw predictions per output and row.

    Attributes:
        values: Raw scores, shape (value_size, vector_count).
        steps: Ensemble length reflected by each score, same shape.
    """

    def __init__(self, value_size: int, vector_count: int):
        self.values = np.zeros((value_size, vector_count))
        self.steps = np.zeros((value_size, vector_count), dtype=np.int64)

    @property
    def value_size(self) -> int:
        return self.values.shape[0]

    @property
    def vector_count(self) -> int:
        return self.values.shape[1]

    def update_row(
        self,
        row: int,
        ensembles: Sequence[List[RegressionTreeNode]],
        multi_tree: bool,
        learning_rate: float,
        features: np.ndarray,
        step: int
    ) -> np.ndarray:
        """
        Add the contribution of trees [cached step, step) to ``row``.

        Returns the up-to-date raw outputs of the row.
        """
        if multi_tree:
            self.values[:, row] += predict_raw_ensemble(
                ensembles[0], int(self.steps[0, row]), learning_rate, features
            )
        else:
            for j, ensemble in enumerate(ensembles):
                self.values[j, row] += predict_raw_ensemble(
                    ensemble, int(self.steps[j, row]), learning_rate, features
                )[0]
        self.steps[:, row] = step
        return self.values[:, row]

    def write(self, archive: Archive) -> None:
        archive.write_int(self.value_size)
        archive.write_int(self.vector_count)
        for j in range(self.value_size):
            archive.write_int_array(self.steps[j])
            archive.write_double_array(self.values[j])

    @staticmethod
    def write_empty(archive: Archive) -> None:
        archive.write_int(0)
        archive.write_int(0)

    @classmethod
    def read(cls, archive: Archive) -> Optional["PredictionCache"]:
        """Restore a cache stored by ``write``; None for an empty cache."""
        value_size = archive.read_int()
        vector_count = archive.read_int()
        if value_size == 0:
            return None
        cache = cls(value_size, vector_count)
        for j in range(value_size):
            steps = archive.read_int_array()
            values = archive.read_double_array()
            if len(steps) != vector_count or len(values) != vector_count:
                raise ValueError(
                    f"Corrupted prediction cache: expected {vector_count} rows for output {j}"
                )
            cache.steps[j] = steps
            cache.values[j] = values
        return cache
