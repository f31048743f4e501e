"""Random row and feature subsets for stochastic boosting."""

import numpy as np


def generate_random_array(random: np.random.Generator, n: int, k: int) -> np.ndarray:
    """
    Draw ``k`` distinct indices from [0, n) in ascending order.

    A partial Fisher-Yates shuffle over the identity permutation: position i
    is swapped with a uniformly chosen position in [i, n - 1] for the first k
    positions, the prefix is kept and sorted. With ``k == n`` the identity is
    returned without consuming random numbers.

    Raises:
        ValueError: If ``k`` is not in [1, n].
    """
    if not 1 <= k <= n:
        raise ValueError(f"Cannot draw {k} distinct indices from range of size {n}")

    result = np.arange(n, dtype=np.int64)
    if k == n:
        return result

    for i in range(k):
        index = int(random.integers(i, n))
        result[i], result[index] = result[index], result[i]
    return np.sort(result[:k])


def sample_size(count: int, ratio: float) -> int:
    """Number of elements drawn for a sampling ratio, at least one."""
    return max(int(count * ratio), 1)


class ActiveSet:
    """
    Rows and features used by the current iteration.

    Attributes:
        used_vectors: Ascending row indices.
        used_features: Ascending feature indices.
        feature_numbers: For every feature, its position in ``used_features``
            or -1 when the feature is not used.
    """

    def __init__(self, vector_count: int, feature_count: int):
        self.vector_count = vector_count
        self.feature_count = feature_count
        self.used_vectors = np.arange(vector_count, dtype=np.int64)
        self.used_features = np.arange(feature_count, dtype=np.int64)
        self.feature_numbers = np.arange(feature_count, dtype=np.int64)

    def set_vectors(self, used_vectors: np.ndarray) -> None:
        self.used_vectors = np.asarray(used_vectors, dtype=np.int64)

    def set_features(self, used_features: np.ndarray) -> None:
        self.used_features = np.asarray(used_features, dtype=np.int64)
        self.feature_numbers = np.full(self.feature_count, -1, dtype=np.int64)
        self.feature_numbers[self.used_features] = np.arange(len(self.used_features))
