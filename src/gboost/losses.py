"""
Loss functions for gradient boosting: gradients, Hessians and mean loss.

Every loss works on arrays of shape (n_outputs, n_rows): row ``i`` of the
array holds the values of output ``i`` for the currently active rows.
Targets of the classification losses are in {0, 1}.

References:
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
- Friedman, J., Hastie, T., & Tibshirani, R. (2000). Additive logistic regression:
  a statistical view of boosting (LogitBoost).
"""

from abc import ABC, abstractmethod
from typing import Tuple

import numpy as np

from .params import LossFunction

# Exponent arguments are clamped to this value
MAX_EXP_ARGUMENT = 30.0
# Smallest Hessian handed to the tree builders
MIN_HESSIAN = 1e-16


def _check_shapes(predicts: np.ndarray, answers: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    predicts = np.atleast_2d(np.asarray(predicts, dtype=np.float64))
    answers = np.atleast_2d(np.asarray(answers, dtype=np.float64))
    if predicts.shape[0] != answers.shape[0]:
        raise ValueError(
            f"Output count mismatch: {predicts.shape[0]} predictions vs {answers.shape[0]} answers"
        )
    if predicts.shape != answers.shape:
        raise ValueError(f"Shape mismatch: predictions {predicts.shape} vs answers {answers.shape}")
    return predicts, answers


def _mean_over_rows_then_outputs(terms: np.ndarray) -> float:
    """Mean over rows of each output, then mean of those means."""
    if terms.shape[0] == 0 or terms.shape[1] == 0:
        return 0.0
    return float(np.mean(np.mean(terms, axis=1)))


class LossFunctionBase(ABC):
    """Abstract base class for boosting losses."""

    def calc_gradient_and_hessian(
        self,
        predicts: np.ndarray,
        answers: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Compute per-element gradient and Hessian of the loss.

        Parameters
        ----------
        predicts : np.ndarray, shape (n_outputs, n_rows)
            Current raw model outputs.
        answers : np.ndarray, shape (n_outputs, n_rows)
            Targets.

        Returns
        -------
        gradients, hessians : np.ndarray, shape (n_outputs, n_rows)

        Raises
        ------
        ValueError
            If the two arrays do not have the same shape.
        """
        predicts, answers = _check_shapes(predicts, answers)
        return self._gradient_and_hessian(predicts, answers)

    def calc_loss_mean(self, predicts: np.ndarray, answers: np.ndarray) -> float:
        """Mean loss over rows, averaged over outputs."""
        predicts, answers = _check_shapes(predicts, answers)
        return _mean_over_rows_then_outputs(self._loss_terms(predicts, answers))

    @abstractmethod
    def _gradient_and_hessian(
        self,
        predicts: np.ndarray,
        answers: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        pass

    @abstractmethod
    def _loss_terms(self, predicts: np.ndarray, answers: np.ndarray) -> np.ndarray:
        pass


class BinomialLoss(LossFunctionBase):
    """
    Binomial deviance (logistic loss).

    Gradient is sigmoid(p) - y. The mean loss reports the clamped term
    log(1 + exp(min(-p, M))) - p*y.
    """

    def _gradient_and_hessian(self, predicts, answers):
        prob = 1.0 / (1.0 + np.exp(np.minimum(-predicts, MAX_EXP_ARGUMENT)))
        gradients = prob - answers
        hessians = np.maximum(prob * (1.0 - prob), MIN_HESSIAN)
        return gradients, hessians

    def _loss_terms(self, predicts, answers):
        return np.log1p(np.exp(np.minimum(-predicts, MAX_EXP_ARGUMENT))) - predicts * answers


class ExponentialLoss(LossFunctionBase):
    """Exponential loss (AdaBoost): L(y, p) = exp(-(2y - 1) p)."""

    def _gradient_and_hessian(self, predicts, answers):
        t = -(2.0 * answers - 1.0)
        t_exp = np.exp(np.minimum(t * predicts, MAX_EXP_ARGUMENT))
        gradients = t * t_exp
        hessians = np.maximum(t * t * t_exp, MIN_HESSIAN)
        return gradients, hessians

    def _loss_terms(self, predicts, answers):
        return np.exp(np.minimum((1.0 - 2.0 * answers) * predicts, MAX_EXP_ARGUMENT))


class SquaredHingeLoss(LossFunctionBase):
    """Smoothed squared hinge: L(y, p) = max(0, 1 - (2y - 1) p)^2."""

    def _gradient_and_hessian(self, predicts, answers):
        t = -(2.0 * answers - 1.0)
        active = t * predicts < 1.0
        gradients = np.where(active, 2.0 * t * (t * predicts - 1.0), 0.0)
        hessians = np.where(active, np.maximum(2.0 * t * t, MIN_HESSIAN), MIN_HESSIAN)
        return gradients, hessians

    def _loss_terms(self, predicts, answers):
        base = np.maximum(0.0, 1.0 - (2.0 * answers - 1.0) * predicts)
        return base * base


class SquaredLoss(LossFunctionBase):
    """Squared error loss: L(y, p) = 0.5 * (y - p)^2."""

    def _gradient_and_hessian(self, predicts, answers):
        return predicts - answers, np.ones_like(predicts)

    def _loss_terms(self, predicts, answers):
        diff = answers - predicts
        return diff * diff / 2.0


_LOSS_FUNCTIONS = {
    LossFunction.BINOMIAL: BinomialLoss,
    LossFunction.EXPONENTIAL: ExponentialLoss,
    LossFunction.SQUARED_HINGE: SquaredHingeLoss,
    LossFunction.L2: SquaredLoss,
}


def create_loss_function(kind: LossFunction) -> LossFunctionBase:
    """Instantiate the loss function for ``kind``."""
    try:
        return _LOSS_FUNCTIONS[kind]()
    except KeyError:
        raise ValueError(f"Unknown loss function: {kind!r}") from None
