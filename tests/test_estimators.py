"""
Tests for the estimator interface and the evaluation helpers.

Covers:
- Fitting and prediction contracts of the regressor and classifier
- Determinism with random_state
- Training/validation loss tracking
- Label handling, sample weights, sparse inputs
- Metric utilities
"""

import sys
from pathlib import Path

import numpy as np
import pytest
from scipy import sparse
from sklearn.datasets import make_classification, make_regression
from sklearn.ensemble import GradientBoostingRegressor as SklearnGBR
from sklearn.metrics import r2_score
from sklearn.model_selection import train_test_split

src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from gboost.estimators import GradientBoostingClassifier, GradientBoostingRegressor
from gboost.utils import compute_metrics_classification, compute_metrics_regression, sigmoid


# =========================
# Test GradientBoostingRegressor
# =========================

def test_regressor_determinism():
    """Same random_state gives identical results."""
    X, y = make_regression(n_samples=100, n_features=5, random_state=123)

    gbr1 = GradientBoostingRegressor(n_estimators=10, subsample=0.8, random_state=42)
    gbr1.fit(X, y)
    gbr2 = GradientBoostingRegressor(n_estimators=10, subsample=0.8, random_state=42)
    gbr2.fit(X, y)

    np.testing.assert_array_equal(gbr1.predict(X), gbr2.predict(X))


def test_regressor_learning_rate_effect():
    """Lower learning_rate reduces per-iteration impact."""
    X, y = make_regression(n_samples=100, n_features=5, random_state=42)

    gbr_high = GradientBoostingRegressor(n_estimators=5, learning_rate=1.0, max_depth=3)
    gbr_high.fit(X, y)
    gbr_low = GradientBoostingRegressor(n_estimators=5, learning_rate=0.1, max_depth=3)
    gbr_low.fit(X, y)

    mse_high = np.mean((y - gbr_high.predict(X)) ** 2)
    mse_low = np.mean((y - gbr_low.predict(X)) ** 2)
    assert mse_high < mse_low


def test_regressor_validation_tracking():
    X, y = make_regression(n_samples=200, n_features=5, random_state=42)
    X_train, X_val, y_train, y_val = train_test_split(X, y, test_size=0.3, random_state=42)

    gbr = GradientBoostingRegressor(n_estimators=10, random_state=42)
    gbr.fit(X_train, y_train, X_val=X_val, y_val=y_val)

    assert len(gbr.train_scores_) == 10
    assert len(gbr.val_scores_) == 10
    # tracked validation loss matches the final model
    final = 0.5 * np.mean((y_val - gbr.predict(X_val)) ** 2)
    assert gbr.val_scores_[-1] == pytest.approx(final, rel=1e-9)


def test_regressor_training_loss_decreases():
    X, y = make_regression(n_samples=150, n_features=4, noise=3.0, random_state=0)
    gbr = GradientBoostingRegressor(n_estimators=20, learning_rate=0.2)
    gbr.fit(X, y)

    scores = np.array(gbr.train_scores_)
    assert np.all(np.diff(scores) <= 1e-9)
    assert gbr.booster_.last_loss == pytest.approx(scores[-1], rel=1e-9)


def test_regressor_close_to_sklearn():
    X, y = make_regression(n_samples=300, n_features=8, noise=10.0, random_state=7)
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.3, random_state=0)

    ours = GradientBoostingRegressor(n_estimators=100, learning_rate=0.1, max_depth=3)
    ours.fit(X_train, y_train)
    reference = SklearnGBR(n_estimators=100, learning_rate=0.1, max_depth=3, random_state=0)
    reference.fit(X_train, y_train)

    r2_ours = r2_score(y_test, ours.predict(X_test))
    r2_reference = r2_score(y_test, reference.predict(X_test))
    assert r2_ours > r2_reference - 0.1


def test_regressor_multi_output():
    X, Y = make_regression(n_samples=80, n_features=4, n_targets=3, random_state=1)
    for builder in ("full", "multi_full"):
        gbr = GradientBoostingRegressor(n_estimators=10, learning_rate=0.3, tree_builder=builder)
        gbr.fit(X, Y)
        assert gbr.predict(X).shape == (80, 3)


def test_regressor_sample_weight_zero_rows_are_ignored():
    X, y = make_regression(n_samples=60, n_features=3, random_state=2)
    weights = np.ones(60)
    weights[:20] = 0.0

    weighted = GradientBoostingRegressor(n_estimators=5).fit(X, y, sample_weight=weights)
    subset = GradientBoostingRegressor(n_estimators=5).fit(X[20:], y[20:])

    np.testing.assert_allclose(weighted.predict(X), subset.predict(X))


def test_regressor_sparse_input():
    X, y = make_regression(n_samples=60, n_features=5, random_state=3)
    X[X < 0] = 0.0
    dense = GradientBoostingRegressor(n_estimators=5).fit(X, y)
    sparse_fit = GradientBoostingRegressor(n_estimators=5).fit(sparse.csr_matrix(X), y)
    np.testing.assert_allclose(sparse_fit.predict(X), dense.predict(X))


@pytest.mark.parametrize("representation", ["linked", "compact", "quick_scorer"])
@pytest.mark.parametrize("tree_builder", ["full", "fast_hist"])
def test_regressor_configurations(representation, tree_builder):
    X, y = make_regression(n_samples=100, n_features=4, random_state=5)
    gbr = GradientBoostingRegressor(n_estimators=15, learning_rate=0.3,
                                    tree_builder=tree_builder, representation=representation)
    gbr.fit(X, y)
    assert gbr.n_trees_ == 15
    assert np.mean((y - gbr.predict(X)) ** 2) < np.var(y)


# =========================
# Test GradientBoostingClassifier
# =========================

class TestClassifier:

    def test_predict_proba_range(self):
        X, y = make_classification(n_samples=100, n_features=10, n_classes=2, random_state=42)
        gbc = GradientBoostingClassifier(n_estimators=20, random_state=42)
        gbc.fit(X, y)

        proba = gbc.predict_proba(X)

        assert proba.shape == (100, 2)
        assert np.all(proba >= 0.0) and np.all(proba <= 1.0)
        np.testing.assert_allclose(proba.sum(axis=1), np.ones(100))

    def test_predict_matches_proba(self):
        X, y = make_classification(n_samples=100, n_features=10, n_classes=2, random_state=42)
        gbc = GradientBoostingClassifier(n_estimators=20, random_state=42)
        gbc.fit(X, y)

        pred_from_proba = gbc.classes_[np.argmax(gbc.predict_proba(X), axis=1)]
        np.testing.assert_array_equal(gbc.predict(X), pred_from_proba)

    def test_determinism(self):
        X, y = make_classification(n_samples=100, n_features=5, random_state=123)

        gbc1 = GradientBoostingClassifier(n_estimators=10, subsample=0.8, random_state=42)
        gbc2 = GradientBoostingClassifier(n_estimators=10, subsample=0.8, random_state=42)

        np.testing.assert_array_equal(gbc1.fit(X, y).predict(X), gbc2.fit(X, y).predict(X))

    def test_improves_with_iterations(self):
        X, y = make_classification(n_samples=200, n_features=10, n_informative=8, random_state=42)

        acc_few = np.mean(GradientBoostingClassifier(n_estimators=5).fit(X, y).predict(X) == y)
        acc_many = np.mean(GradientBoostingClassifier(n_estimators=50).fit(X, y).predict(X) == y)

        assert acc_many >= acc_few

    def test_validation_tracking(self):
        X, y = make_classification(n_samples=200, n_features=5, random_state=42)
        X_train, X_val, y_train, y_val = train_test_split(X, y, test_size=0.3, random_state=42)

        gbc = GradientBoostingClassifier(n_estimators=10, random_state=42)
        gbc.fit(X_train, y_train, X_val=X_val, y_val=y_val)

        assert len(gbc.train_scores_) == 10
        assert len(gbc.val_scores_) == 10

    def test_string_labels(self):
        X, y = make_classification(n_samples=90, n_features=4, n_informative=3, n_classes=3,
                                   n_clusters_per_class=1, class_sep=2.0, random_state=0)
        labels = np.array(["red", "green", "blue"])[y]

        gbc = GradientBoostingClassifier(n_estimators=20, learning_rate=0.3).fit(X, labels)

        assert list(gbc.classes_) == ["blue", "green", "red"]
        assert gbc.predict_proba(X).shape == (90, 3)
        assert np.mean(gbc.predict(X) == labels) > 0.8

    def test_unseen_validation_label_raises(self):
        X, y = make_classification(n_samples=50, n_features=4, random_state=0)
        gbc = GradientBoostingClassifier(n_estimators=3)
        with pytest.raises(ValueError, match="not seen during fit"):
            gbc.fit(X, y, X_val=X[:5], y_val=np.array([0, 1, 2, 0, 1]))

    @pytest.mark.parametrize("loss", ["exponential", "squared_hinge"])
    def test_other_losses(self, loss):
        X, y = make_classification(n_samples=120, n_features=5, class_sep=2.0, random_state=3)
        gbc = GradientBoostingClassifier(loss=loss, n_estimators=10).fit(X, y)
        proba = gbc.predict_proba(X)
        assert np.all((proba >= 0.0) & (proba <= 1.0))

    def test_l2_loss_is_rejected(self):
        X, y = make_classification(n_samples=20, n_features=3, random_state=0)
        with pytest.raises(ValueError, match="GradientBoostingRegressor"):
            GradientBoostingClassifier(loss="l2").fit(X, y)


# =========================
# Test Edge Cases
# =========================

def test_unfitted_estimator_raises():
    with pytest.raises(RuntimeError, match="not fitted"):
        GradientBoostingRegressor().predict(np.zeros((2, 2)))


def test_regressor_two_samples():
    X = np.array([[1, 2], [3, 4]])
    y = np.array([1.0, 2.0])

    gbr = GradientBoostingRegressor(n_estimators=5, random_state=42)
    gbr.fit(X, y)

    assert gbr.predict(X).shape == y.shape


def test_classifier_two_samples():
    X = np.array([[1, 2], [3, 4]])
    y = np.array([0, 1])

    gbc = GradientBoostingClassifier(n_estimators=5, random_state=42)
    gbc.fit(X, y)

    assert gbc.predict(X).shape == y.shape
    assert gbc.predict_proba(X).shape == (2, 2)


# =========================
# Metric utilities
# =========================

class TestMetricUtilities:

    def test_sigmoid_stability(self):
        np.testing.assert_allclose(sigmoid(np.array([100.0, 500.0])), 1.0, atol=1e-10)
        np.testing.assert_allclose(sigmoid(np.array([-100.0, -500.0])), 0.0, atol=1e-10)
        assert sigmoid(np.array([0.0]))[0] == pytest.approx(0.5)

    def test_regression_metrics(self):
        y_true = np.array([1.0, 2.0, 3.0])
        result = compute_metrics_regression(y_true, np.array([2.0, 2.0, 2.0]))
        assert result["mse"] == pytest.approx(2.0 / 3.0)
        assert result["rmse"] == pytest.approx(np.sqrt(2.0 / 3.0))
        assert result["mae"] == pytest.approx(2.0 / 3.0)

    def test_binary_classification_metrics(self):
        y_true = np.array([0, 1, 1, 0])
        proba = np.array([0.1, 0.9, 0.6, 0.4])
        result = compute_metrics_classification(y_true, proba)
        assert result["accuracy"] == pytest.approx(1.0)
        assert result["roc_auc"] == pytest.approx(1.0)
        assert result["log_loss"] > 0

    def test_two_column_probabilities(self):
        y_true = np.array([0, 1])
        proba = np.array([[0.8, 0.2], [0.3, 0.7]])
        result = compute_metrics_classification(y_true, proba)
        assert result["accuracy"] == pytest.approx(1.0)

    def test_multiclass_metrics(self):
        y_true = np.array([0, 1, 2])
        proba = np.array([[0.7, 0.2, 0.1], [0.1, 0.8, 0.1], [0.3, 0.3, 0.4]])
        result = compute_metrics_classification(y_true, proba)
        assert result["accuracy"] == pytest.approx(1.0)
        assert np.isnan(result["roc_auc"])
