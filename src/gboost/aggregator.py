"""
Per-iteration statistics of the boosting trainer.

The aggregator brings the prediction cache up to date for a set of rows
(in parallel, each worker owning a contiguous slice of the rows), turns the
predictions into gradients and Hessians through the loss function, applies
the vector weights and sums everything per output for the tree builders.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from .cache import PredictionCache, run_partitioned
from .losses import LossFunctionBase
from .tree import RegressionTreeNode

logger = logging.getLogger(__name__)


@dataclass
class StepStatistics:
    """
    Weighted statistics of the active rows.

    Per-row arrays have shape (n_outputs, n_active_rows), sums (n_outputs,).
    """

    predicts: np.ndarray
    answers: np.ndarray
    gradients: np.ndarray
    gradient_sums: np.ndarray
    hessians: np.ndarray
    hessian_sums: np.ndarray
    weights: np.ndarray
    weight_sum: float


class StatisticsAggregator:
    """
    Computes predictions through the cache and the statistics derived from them.

    Parameters
    ----------
    thread_count : int
        Number of workers refreshing the cache.
    learning_rate : float
        Shrinkage of every tree output.
    multi_tree : bool
        Whether the ensemble is a single list of multi-output trees.
    """

    def __init__(self, thread_count: int, learning_rate: float, multi_tree: bool):
        self.thread_count = thread_count
        self.learning_rate = learning_rate
        self.multi_tree = multi_tree

    def build_predictions(
        self,
        problem,
        ensembles: Sequence[List[RegressionTreeNode]],
        cache: PredictionCache,
        used_vectors: np.ndarray,
        step: int
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Bring ``used_vectors`` up to ensemble length ``step``.

        Returns predictions and answers, shape (value_size, len(used_vectors)),
        column ``i`` belonging to row ``used_vectors[i]``.
        """
        predicts = np.empty((problem.value_size, len(used_vectors)))

        def refresh(start: int, stop: int) -> None:
            for index in range(start, stop):
                row = int(used_vectors[index])
                predicts[:, index] = cache.update_row(
                    row, ensembles, self.multi_tree, self.learning_rate,
                    problem.get_row(row), step
                )

        run_partitioned(len(used_vectors), self.thread_count, refresh)
        answers = np.ascontiguousarray(problem.values[used_vectors].T)
        return predicts, answers

    def build_full_predictions(
        self,
        problem,
        ensembles: Sequence[List[RegressionTreeNode]],
        cache: PredictionCache
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Bring every row of ``problem`` up to the full ensemble."""
        return self.build_predictions(
            problem, ensembles, cache, np.arange(problem.vector_count), len(ensembles[0])
        )

    def collect(
        self,
        problem,
        ensembles: Sequence[List[RegressionTreeNode]],
        cache: PredictionCache,
        used_vectors: np.ndarray,
        loss: LossFunctionBase
    ) -> StepStatistics:
        """Refresh the active rows and derive their weighted gradients and Hessians."""
        step = len(ensembles[0])
        predicts, answers = self.build_predictions(problem, ensembles, cache, used_vectors, step)
        gradients, hessians = loss.calc_gradient_and_hessian(predicts, answers)

        weights = np.asarray(problem.weights, dtype=np.float64)[used_vectors]
        gradients = gradients * weights
        hessians = hessians * weights
        stats = StepStatistics(
            predicts=predicts,
            answers=answers,
            gradients=gradients,
            gradient_sums=gradients.sum(axis=1),
            hessians=hessians,
            hessian_sums=hessians.sum(axis=1),
            weights=weights,
            weight_sum=float(weights.sum()),
        )
        for output in range(len(stats.gradient_sums)):
            logger.debug(
                f"Output {output}: GradientSum = {stats.gradient_sums[output]:.6g} "
                f"HessianSum = {stats.hessian_sums[output]:.6g}"
            )
        return stats
