"""
Trained gradient boosting models.

``GradientBoostModel`` wraps the ensembles produced by training ("linked"
representation) and can convert its trees in place to the flat array layout
("compact" representation). Both expose regression outputs and class
probabilities derived from the loss the model was trained with.
"""

from abc import ABC, abstractmethod
from typing import List, Sequence, Union

import numpy as np
from scipy import sparse

from .params import LossFunction
from .tree import CompactRegressionTree, RegressionTreeNode
from .utils import sigmoid

Tree = Union[RegressionTreeNode, CompactRegressionTree]


def predict_raw_ensemble(
    ensemble: Sequence[Tree],
    from_step: int,
    learning_rate: float,
    row: np.ndarray
) -> np.ndarray:
    """
    Sum of the learning-rate-scaled outputs of trees ``ensemble[from_step:]``.

    Used to bring a cached prediction made with the first ``from_step`` trees
    up to date with the whole ensemble.
    """
    result = None
    for tree in ensemble[from_step:]:
        output = learning_rate * tree.predict(row)
        result = output if result is None else result + output
    if result is None:
        value_size = ensemble[0].value_size if len(ensemble) > 0 else 1
        return np.zeros(value_size)
    return result


def probability(raw: np.ndarray, loss_function: LossFunction) -> np.ndarray:
    """Map raw scores to probabilities according to the training loss."""
    if loss_function == LossFunction.EXPONENTIAL:
        raw = 2.0 * raw
    return sigmoid(raw)


def dense_matrix(X) -> np.ndarray:
    """Dense float matrix of shape (n_rows, n_features); a single row becomes a one-row matrix."""
    if sparse.issparse(X):
        return X.toarray()
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X[None, :]
    return X


class BoostingModelBase(ABC):
    """Outputs shared by every model representation."""

    learning_rate: float
    loss_function: LossFunction

    @property
    @abstractmethod
    def value_size(self) -> int:
        """Number of raw outputs per row."""

    @abstractmethod
    def get_tree_count(self) -> int:
        """Number of boosting iterations in the model."""

    @abstractmethod
    def _predict_raw_dense(self, X: np.ndarray) -> np.ndarray:
        pass

    def predict_raw(self, X) -> np.ndarray:
        """Raw ensemble outputs, shape (n_rows, value_size)."""
        return self._predict_raw_dense(dense_matrix(X))

    def predict(self, X) -> np.ndarray:
        """Regression outputs: shape (n_rows,) for one output, else (n_rows, value_size)."""
        raw = self.predict_raw(X)
        return raw[:, 0] if self.value_size == 1 else raw

    def predict_proba(self, X) -> np.ndarray:
        """
        Class probabilities, shape (n_rows, n_classes).

        A single output is a binary problem and yields two columns; several
        outputs are one-vs-all scores normalised to sum to one.
        """
        prob = probability(self.predict_raw(X), self.loss_function)
        if self.value_size == 1:
            return np.column_stack([1.0 - prob[:, 0], prob[:, 0]])
        total = prob.sum(axis=1, keepdims=True)
        return prob / np.where(total > 0, total, 1.0)

    def classify(self, X) -> np.ndarray:
        """Index of the most probable class for every row."""
        return np.argmax(self.predict_proba(X), axis=1)


class GradientBoostModel(BoostingModelBase):
    """
    Ensemble of regression trees.

    Parameters
    ----------
    ensembles : list of list of trees
        One ensemble per output, or a single ensemble of multi-output trees.
    prediction_size : int
        Length of each tree's leaf value vector.
    learning_rate : float
        Shrinkage applied to every tree output.
    loss_function : LossFunction
        Loss the model was trained with; selects the probability mapping.
    """

    def __init__(
        self,
        ensembles: Sequence[Sequence[Tree]],
        prediction_size: int,
        learning_rate: float,
        loss_function: LossFunction
    ):
        if len(ensembles) == 0:
            raise ValueError("A model needs at least one ensemble")
        self.ensembles: List[List[Tree]] = [list(ensemble) for ensemble in ensembles]
        self.prediction_size = prediction_size
        self.learning_rate = learning_rate
        self.loss_function = loss_function
        self.is_compact = False

    @property
    def value_size(self) -> int:
        return len(self.ensembles) * self.prediction_size

    def get_tree_count(self) -> int:
        return len(self.ensembles[0])

    def convert_to_compact(self) -> None:
        """Replace every linked tree with its flat-array counterpart."""
        for ensemble in self.ensembles:
            for i, tree in enumerate(ensemble):
                if isinstance(tree, RegressionTreeNode):
                    ensemble[i] = CompactRegressionTree.from_node(tree)
        self.is_compact = True

    def _predict_raw_dense(self, X: np.ndarray) -> np.ndarray:
        outputs = []
        for ensemble in self.ensembles:
            raw = np.zeros((X.shape[0], self.prediction_size))
            for tree in ensemble:
                raw += self.learning_rate * tree.predict_matrix(X)
            outputs.append(raw)
        return np.hstack(outputs)
