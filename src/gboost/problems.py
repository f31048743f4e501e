"""
Training problems and the adapters that present them as multivariate regression.

The trainer only ever sees the multivariate regression interface:
``vector_count``, ``feature_count``, ``value_size``, ``get_matrix()``,
``get_row(i)``, ``get_value(i)`` and ``get_vector_weight(i)`` (plus the bulk
``values`` / ``weights`` arrays). Classification and univariate regression
problems are wrapped by the adapters below, and every problem is finally
wrapped by ``NotNullWeightsView`` so that rows with zero weight never reach
the trainer.

Feature matrices can be dense arrays or ``scipy.sparse`` matrices.
"""

import logging
from typing import Optional, Union

import numpy as np
from scipy import sparse

logger = logging.getLogger(__name__)

MatrixLike = Union[np.ndarray, sparse.spmatrix]


def _as_matrix(X) -> MatrixLike:
    if sparse.issparse(X):
        return sparse.csr_matrix(X, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2:
        raise ValueError(f"Feature matrix must be 2-dimensional, got shape {X.shape}")
    return X


def _as_weights(sample_weight, n_samples: int) -> np.ndarray:
    if sample_weight is None:
        return np.ones(n_samples)
    weights = np.asarray(sample_weight, dtype=np.float64).ravel()
    if weights.shape[0] != n_samples:
        raise ValueError(f"Expected {n_samples} weights, got {weights.shape[0]}")
    if np.any(weights < 0):
        raise ValueError("Vector weights must be non-negative")
    return weights


def dense_rows(matrix: MatrixLike, indices: np.ndarray) -> np.ndarray:
    """Rows ``indices`` of a dense or sparse matrix as a dense 2-D array."""
    rows = matrix[indices]
    if sparse.issparse(rows):
        return rows.toarray()
    return np.asarray(rows)


class _Problem:
    """Feature matrix and vector weights shared by all problem kinds."""

    def __init__(self, X, sample_weight=None):
        self._matrix = _as_matrix(X)
        self._weights = _as_weights(sample_weight, self._matrix.shape[0])

    @property
    def vector_count(self) -> int:
        return self._matrix.shape[0]

    @property
    def feature_count(self) -> int:
        return self._matrix.shape[1]

    @property
    def weights(self) -> np.ndarray:
        return self._weights

    def get_matrix(self) -> MatrixLike:
        return self._matrix

    def get_row(self, index: int) -> np.ndarray:
        """Dense feature vector of row ``index``."""
        row = self._matrix[index]
        if sparse.issparse(row):
            return row.toarray().ravel()
        return row

    def get_vector_weight(self, index: int) -> float:
        return float(self._weights[index])

    def _check_targets(self, y: np.ndarray) -> None:
        if y.shape[0] != self.vector_count:
            raise ValueError(
                f"X and y have incompatible shapes: {self.vector_count} vs {y.shape[0]}"
            )


class ClassificationProblem(_Problem):
    """
    Classification problem with arbitrary labels.

    Labels are encoded to 0..C-1 in sorted order; ``classes_`` keeps the
    original values.
    """

    def __init__(self, X, y, sample_weight=None):
        super().__init__(X, sample_weight)
        y = np.asarray(y).ravel()
        self._check_targets(y)
        self.classes_, self._labels = np.unique(y, return_inverse=True)
        if self.class_count < 2:
            raise ValueError("Classification problem needs at least two classes")

    @property
    def class_count(self) -> int:
        return len(self.classes_)

    @property
    def labels(self) -> np.ndarray:
        return self._labels

    def get_class(self, index: int) -> int:
        return int(self._labels[index])


class RegressionProblem(_Problem):
    """Univariate regression problem."""

    def __init__(self, X, y, sample_weight=None):
        super().__init__(X, sample_weight)
        y = np.asarray(y, dtype=np.float64).ravel()
        self._check_targets(y)
        self._targets = y

    @property
    def targets(self) -> np.ndarray:
        return self._targets

    def get_value(self, index: int) -> float:
        return float(self._targets[index])


class MultivariateRegressionProblem(_Problem):
    """Regression problem with a vector of targets per row."""

    def __init__(self, X, Y, sample_weight=None):
        super().__init__(X, sample_weight)
        Y = np.asarray(Y, dtype=np.float64)
        if Y.ndim == 1:
            Y = Y[:, None]
        self._check_targets(Y)
        self._values = Y

    @property
    def value_size(self) -> int:
        return self._values.shape[1]

    @property
    def values(self) -> np.ndarray:
        return self._values

    def get_value(self, index: int) -> np.ndarray:
        return self._values[index]


class _MultivariateAdapter:
    """Multivariate regression view over another problem."""

    def __init__(self, inner, values: np.ndarray):
        self._inner = inner
        self._values = values

    @property
    def vector_count(self) -> int:
        return self._inner.vector_count

    @property
    def feature_count(self) -> int:
        return self._inner.feature_count

    @property
    def value_size(self) -> int:
        return self._values.shape[1]

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def weights(self) -> np.ndarray:
        return self._inner.weights

    def get_matrix(self) -> MatrixLike:
        return self._inner.get_matrix()

    def get_row(self, index: int) -> np.ndarray:
        return self._inner.get_row(index)

    def get_value(self, index: int) -> np.ndarray:
        return self._values[index]

    def get_vector_weight(self, index: int) -> float:
        return self._inner.get_vector_weight(index)


class MultivariateOverBinaryClassification(_MultivariateAdapter):
    """One output: 1.0 for the second class, 0.0 for the first."""

    def __init__(self, problem: ClassificationProblem):
        if problem.class_count != 2:
            raise ValueError(f"Expected a binary problem, got {problem.class_count} classes")
        values = (problem.labels == 1).astype(np.float64)[:, None]
        super().__init__(problem, values)


class MultivariateOverClassification(_MultivariateAdapter):
    """One output per class, one-hot encoded."""

    def __init__(self, problem: ClassificationProblem):
        values = np.zeros((problem.vector_count, problem.class_count))
        values[np.arange(problem.vector_count), problem.labels] = 1.0
        super().__init__(problem, values)


class MultivariateOverUnivariate(_MultivariateAdapter):
    """One output holding the regression target."""

    def __init__(self, problem: RegressionProblem):
        super().__init__(problem, problem.targets[:, None])


class NotNullWeightsView:
    """
    Multivariate problem restricted to the rows with non-zero weight.

    Row indices of the view are dense: row ``i`` of the view is row
    ``original_indices[i]`` of the wrapped problem.
    """

    def __init__(self, inner):
        self._inner = inner
        weights = np.asarray(inner.weights, dtype=np.float64)
        self.original_indices = np.flatnonzero(weights > 0)
        if len(self.original_indices) == inner.vector_count:
            self._matrix = inner.get_matrix()
            self._values = inner.values
            self._weights = weights
        else:
            logger.debug(
                f"Dropping {inner.vector_count - len(self.original_indices)} rows with zero weight"
            )
            self._matrix = inner.get_matrix()[self.original_indices]
            self._values = inner.values[self.original_indices]
            self._weights = weights[self.original_indices]

    @property
    def vector_count(self) -> int:
        return len(self.original_indices)

    @property
    def feature_count(self) -> int:
        return self._inner.feature_count

    @property
    def value_size(self) -> int:
        return self._inner.value_size

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def weights(self) -> np.ndarray:
        return self._weights

    def get_matrix(self) -> MatrixLike:
        return self._matrix

    def get_row(self, index: int) -> np.ndarray:
        row = self._matrix[index]
        if sparse.issparse(row):
            return row.toarray().ravel()
        return row

    def get_value(self, index: int) -> np.ndarray:
        return self._values[index]

    def get_vector_weight(self, index: int) -> float:
        return float(self._weights[index])


def as_multivariate(problem) -> NotNullWeightsView:
    """
    Adapt any supported problem to the trainer's multivariate view.

    Raises:
        ValueError: If ``problem`` is of an unsupported kind.
    """
    if isinstance(problem, ClassificationProblem):
        if problem.class_count == 2:
            multivariate = MultivariateOverBinaryClassification(problem)
        else:
            multivariate = MultivariateOverClassification(problem)
    elif isinstance(problem, RegressionProblem):
        multivariate = MultivariateOverUnivariate(problem)
    elif isinstance(problem, MultivariateRegressionProblem):
        multivariate = problem
    else:
        raise ValueError(f"Unsupported problem type: {type(problem).__name__}")
    return NotNullWeightsView(multivariate)


def prepare_problem(
    X,
    y,
    kind: str,
    sample_weight: Optional[np.ndarray] = None
):
    """Build a problem of ``kind`` ("classification", "regression", "multivariate")."""
    if kind == "classification":
        return ClassificationProblem(X, y, sample_weight)
    if kind == "regression":
        return RegressionProblem(X, y, sample_weight)
    if kind == "multivariate":
        return MultivariateRegressionProblem(X, y, sample_weight)
    raise ValueError(f"Unknown problem kind: {kind!r}")
