"""
Tests for the boosting loss functions.

Covers:
- Gradient/Hessian formulas of every loss kind
- Hessian floor and exponent clamping (no overflow, no zero Hessians)
- Mean loss averaging over rows, then outputs
- Shape validation
"""

import sys
from pathlib import Path

import numpy as np
import pytest

src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from gboost.losses import (
    BinomialLoss, ExponentialLoss, MIN_HESSIAN, SquaredHingeLoss, SquaredLoss,
    create_loss_function,
)
from gboost.params import LossFunction
from gboost.utils import sigmoid


class TestBinomialLoss:

    def test_gradient_at_zero_prediction(self):
        loss = BinomialLoss()
        predicts = np.zeros((1, 4))
        answers = np.array([[0.0, 1.0, 1.0, 0.0]])

        gradients, hessians = loss.calc_gradient_and_hessian(predicts, answers)

        np.testing.assert_allclose(gradients, [[0.5, -0.5, -0.5, 0.5]])
        np.testing.assert_allclose(hessians, np.full((1, 4), 0.25))

    def test_gradient_is_sigmoid_minus_target(self):
        rng = np.random.default_rng(0)
        predicts = rng.standard_normal((2, 30))
        answers = rng.integers(0, 2, size=(2, 30)).astype(float)

        gradients, hessians = BinomialLoss().calc_gradient_and_hessian(predicts, answers)

        p = sigmoid(predicts)
        np.testing.assert_allclose(gradients, p - answers, rtol=1e-10)
        np.testing.assert_allclose(hessians, p * (1 - p), rtol=1e-10)

    def test_loss_mean_known_value(self):
        predicts = np.zeros((1, 2))
        answers = np.array([[0.0, 1.0]])
        assert BinomialLoss().calc_loss_mean(predicts, answers) == pytest.approx(np.log(2.0))

    def test_extreme_predictions_stay_finite(self):
        predicts = np.array([[-1000.0, 1000.0]])
        answers = np.array([[1.0, 0.0]])

        gradients, hessians = BinomialLoss().calc_gradient_and_hessian(predicts, answers)
        loss = BinomialLoss().calc_loss_mean(predicts, answers)

        assert np.all(np.isfinite(gradients))
        assert np.all(hessians >= MIN_HESSIAN)
        assert np.isfinite(loss)


class TestExponentialLoss:

    def test_known_values(self):
        predicts = np.array([[0.0, 0.5]])
        answers = np.array([[1.0, 0.0]])

        gradients, hessians = ExponentialLoss().calc_gradient_and_hessian(predicts, answers)

        # y=1: t=-1, e=exp(-p); y=0: t=1, e=exp(p)
        np.testing.assert_allclose(gradients, [[-1.0, np.exp(0.5)]])
        np.testing.assert_allclose(hessians, [[1.0, np.exp(0.5)]])

    def test_loss_mean(self):
        predicts = np.array([[1.0, 1.0]])
        answers = np.array([[1.0, 0.0]])
        expected = (np.exp(-1.0) + np.exp(1.0)) / 2
        assert ExponentialLoss().calc_loss_mean(predicts, answers) == pytest.approx(expected)

    def test_exponent_is_clamped(self):
        gradients, hessians = ExponentialLoss().calc_gradient_and_hessian(
            np.array([[1e6]]), np.array([[0.0]])
        )
        assert np.isfinite(gradients).all()
        assert np.isfinite(hessians).all()


class TestSquaredHingeLoss:

    def test_margin_branches(self):
        # first element inside the margin (t*p < 1), second outside
        predicts = np.array([[0.0, -3.0]])
        answers = np.array([[1.0, 1.0]])

        gradients, hessians = SquaredHingeLoss().calc_gradient_and_hessian(predicts, answers)

        # t = -1: 2t(tp - 1) = 2 at p=0; t*p = 3 >= 1 for p=-3
        np.testing.assert_allclose(gradients, [[2.0, 0.0]])
        np.testing.assert_allclose(hessians, [[2.0, 1e-16]])

    def test_loss_mean(self):
        predicts = np.array([[0.0, 2.0]])
        answers = np.array([[1.0, 1.0]])
        # max(0, 1 - p)^2: 1 and 0
        assert SquaredHingeLoss().calc_loss_mean(predicts, answers) == pytest.approx(0.5)


class TestSquaredLoss:

    def test_gradient_and_hessian(self):
        predicts = np.array([[1.5, 1.8], [3.2, 3.5]])
        answers = np.array([[1.0, 2.0], [3.0, 4.0]])

        gradients, hessians = SquaredLoss().calc_gradient_and_hessian(predicts, answers)

        np.testing.assert_allclose(gradients, predicts - answers)
        np.testing.assert_array_equal(hessians, np.ones_like(predicts))

    def test_loss_mean_averages_rows_then_outputs(self):
        predicts = np.array([[0.0, 0.0], [0.0, 0.0]])
        answers = np.array([[1.0, 1.0], [2.0, 0.0]])
        # output means: 0.5 and 1.0
        assert SquaredLoss().calc_loss_mean(predicts, answers) == pytest.approx(0.75)

    def test_empty_rows(self):
        assert SquaredLoss().calc_loss_mean(np.zeros((1, 0)), np.zeros((1, 0))) == 0.0


def test_one_dimensional_inputs_are_single_output():
    gradients, _ = SquaredLoss().calc_gradient_and_hessian(np.array([1.0, 2.0]), np.array([0.0, 0.0]))
    assert gradients.shape == (1, 2)


def test_output_count_mismatch_raises():
    with pytest.raises(ValueError, match="Output count mismatch"):
        SquaredLoss().calc_gradient_and_hessian(np.zeros((2, 3)), np.zeros((1, 3)))


def test_row_count_mismatch_raises():
    with pytest.raises(ValueError, match="Shape mismatch"):
        BinomialLoss().calc_loss_mean(np.zeros((1, 3)), np.zeros((1, 4)))


@pytest.mark.parametrize("kind, expected", [
    (LossFunction.BINOMIAL, BinomialLoss),
    (LossFunction.EXPONENTIAL, ExponentialLoss),
    (LossFunction.SQUARED_HINGE, SquaredHingeLoss),
    (LossFunction.L2, SquaredLoss),
])
def test_create_loss_function(kind, expected):
    assert isinstance(create_loss_function(kind), expected)


def test_create_loss_function_unknown_kind():
    with pytest.raises(ValueError, match="Unknown loss function"):
        create_loss_function("huber")
