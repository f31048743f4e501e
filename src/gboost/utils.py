"""
Utility functions: numerically stable sigmoid and evaluation metrics.
"""

import numpy as np
from sklearn.metrics import mean_squared_error, log_loss, accuracy_score, roc_auc_score


def sigmoid(x: np.ndarray) -> np.ndarray:
    """Numerically stable sigmoid function."""
    x = np.asarray(x, dtype=np.float64)
    result = np.empty_like(x)
    positive = x >= 0
    result[positive] = 1.0 / (1.0 + np.exp(-x[positive]))
    exp_x = np.exp(x[~positive])
    result[~positive] = exp_x / (1.0 + exp_x)
    return result


# ===========================
# Metrics
# ===========================

def compute_metrics_regression(
    y_true: np.ndarray,
    y_pred: np.ndarray
) -> dict:
    """Compute regression metrics."""
    mse = mean_squared_error(y_true, y_pred)
    rmse = np.sqrt(mse)
    mae = np.mean(np.abs(np.asarray(y_true) - np.asarray(y_pred)))

    return {
        "mse": mse,
        "rmse": rmse,
        "mae": mae
    }


def compute_metrics_classification(
    y_true: np.ndarray,
    y_pred_proba: np.ndarray
) -> dict:
    """
    Compute classification metrics.

    Args:
        y_true: Class indices, shape (n_samples,).
        y_pred_proba: Probability of the positive class, shape (n_samples,),
            or class probabilities, shape (n_samples, n_classes).
    """
    y_true = np.asarray(y_true)
    y_pred_proba = np.asarray(y_pred_proba, dtype=np.float64)
    if y_pred_proba.ndim == 2 and y_pred_proba.shape[1] == 2:
        y_pred_proba = y_pred_proba[:, 1]

    if y_pred_proba.ndim == 1:
        y_pred = (y_pred_proba >= 0.5).astype(int)
        proba_clipped = np.clip(y_pred_proba, 1e-15, 1 - 1e-15)
        labels = [0, 1]
    else:
        y_pred = np.argmax(y_pred_proba, axis=1)
        proba_clipped = np.clip(y_pred_proba, 1e-15, 1.0)
        proba_clipped = proba_clipped / proba_clipped.sum(axis=1, keepdims=True)
        labels = list(range(y_pred_proba.shape[1]))

    logloss = log_loss(y_true, proba_clipped, labels=labels)
    accuracy = accuracy_score(y_true, y_pred)

    # ROC AUC only for binary problems with both classes present
    if y_pred_proba.ndim == 1 and len(np.unique(y_true)) == 2:
        auc = roc_auc_score(y_true, y_pred_proba)
    else:
        auc = np.nan

    return {
        "log_loss": logloss,
        "accuracy": accuracy,
        "roc_auc": auc
    }
