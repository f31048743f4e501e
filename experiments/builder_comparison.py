"""
Tree-builder and model-representation comparison on synthetic data.

Trains the same boosting configuration with every tree builder, records the
training curves and timings, then scores one trained ensemble with each
output representation.
"""

import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from sklearn.datasets import make_classification, make_regression
from sklearn.model_selection import train_test_split

from gboost import (
    GradientBoost, GradientBoostingClassifier, GradientBoostingRegressor, LossFunction,
    RegressionProblem, Representation,
)
from gboost.utils import compute_metrics_classification, compute_metrics_regression

OUTPUT_DIR = Path(__file__).parent

# Set style
plt.style.use('seaborn-v0_8-darkgrid')


def load_data():
    """Synthetic regression data, split into train/val/test."""
    print("Generating regression data...")
    X, y = make_regression(n_samples=4000, n_features=20, n_informative=10,
                           noise=10.0, random_state=42)
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.2, random_state=42)
    X_train, X_val, y_train, y_val = train_test_split(
        X_train, y_train, test_size=0.2, random_state=42
    )
    print(f"Train: {X_train.shape}, Val: {X_val.shape}, Test: {X_test.shape}")
    return X_train, X_val, X_test, y_train, y_val, y_test


def compare_builders(X_train, X_val, X_test, y_train, y_val, y_test):
    """Experiment: full-scan vs histogram builders, single vs multi-output."""
    print("\n" + "="*60)
    print("Experiment 1: Tree builders")
    print("="*60)

    builders = ["full", "multi_full", "fast_hist", "multi_fast_hist"]
    results = []

    fig, axes = plt.subplots(1, len(builders), figsize=(20, 4), sharey=True)

    for idx, builder in enumerate(builders):
        print(f"\nFitting with tree_builder={builder}...")
        gbr = GradientBoostingRegressor(
            n_estimators=100,
            learning_rate=0.1,
            max_depth=4,
            subsample=0.8,
            tree_builder=builder,
            max_bins=64,
            n_jobs=4,
            random_state=42
        )
        start = time.perf_counter()
        gbr.fit(X_train, y_train, X_val=X_val, y_val=y_val)
        elapsed = time.perf_counter() - start

        test_mse = compute_metrics_regression(y_test, gbr.predict(X_test))["mse"]
        print(f"Test MSE: {test_mse:.4f} ({elapsed:.2f}s)")

        results.append({
            'tree_builder': builder,
            'fit_seconds': elapsed,
            'test_mse': test_mse,
            'final_train_loss': gbr.train_scores_[-1],
            'final_val_loss': gbr.val_scores_[-1]
        })

        ax = axes[idx]
        ax.plot(gbr.train_scores_, label='Train', linewidth=2)
        ax.plot(gbr.val_scores_, label='Validation', linewidth=2)
        ax.set_xlabel('Iteration')
        ax.set_ylabel('Loss')
        ax.set_title(builder)
        ax.legend()

    plt.tight_layout()
    plt.savefig(OUTPUT_DIR / 'builder_curves.png', dpi=150)
    print("\nSaved plot: builder_curves.png")

    return pd.DataFrame(results)


def compare_representations(X_train, X_test, y_train, y_test):
    """Experiment: scoring time of linked, compact and QuickScorer models."""
    print("\n" + "="*60)
    print("Experiment 2: Model representations")
    print("="*60)

    problem = RegressionProblem(X_train, y_train)
    results = []
    reference = None

    for representation in Representation:
        booster = GradientBoost(
            loss_function=LossFunction.L2,
            iterations_count=100,
            learning_rate=0.1,
            max_tree_depth=4,
            subsample=0.8,
            random_state=42,
            representation=representation
        )
        model = booster.train(problem)

        start = time.perf_counter()
        prediction = model.predict(X_test)
        elapsed = time.perf_counter() - start

        if reference is None:
            reference = prediction
        results.append({
            'representation': representation.value,
            'predict_seconds': elapsed,
            'test_mse': compute_metrics_regression(y_test, prediction)["mse"],
            'max_abs_diff': float(np.max(np.abs(prediction - reference)))
        })
        print(f"{representation.value:>13}: {elapsed * 1000:.1f} ms")

    return pd.DataFrame(results)


def classification_losses():
    """Experiment: binary losses on a synthetic classification task."""
    print("\n" + "="*60)
    print("Experiment 3: Classification losses")
    print("="*60)

    X, y = make_classification(n_samples=3000, n_features=20, n_informative=8,
                               random_state=42)
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.25, random_state=42)

    results = []
    for loss in ["binomial", "exponential", "squared_hinge"]:
        gbc = GradientBoostingClassifier(loss=loss, n_estimators=100, max_depth=3,
                                         subsample=0.8, random_state=42)
        gbc.fit(X_train, y_train)
        metrics = compute_metrics_classification(y_test, gbc.predict_proba(X_test))
        metrics['loss'] = loss
        results.append(metrics)
        print(f"{loss:>13}: accuracy={metrics['accuracy']:.4f}, auc={metrics['roc_auc']:.4f}")

    return pd.DataFrame(results)


def main():
    X_train, X_val, X_test, y_train, y_val, y_test = load_data()

    df_builders = compare_builders(X_train, X_val, X_test, y_train, y_val, y_test)
    df_repr = compare_representations(X_train, X_test, y_train, y_test)
    df_losses = classification_losses()

    print("\n" + "="*60)
    print("Summary")
    print("="*60)
    print(df_builders.to_string(index=False))
    print()
    print(df_repr.to_string(index=False))
    print()
    print(df_losses.to_string(index=False))

    df_builders.to_csv(OUTPUT_DIR / 'builder_results.csv', index=False)
    df_repr.to_csv(OUTPUT_DIR / 'representation_results.csv', index=False)
    df_losses.to_csv(OUTPUT_DIR / 'loss_results.csv', index=False)


if __name__ == "__main__":
    main()
