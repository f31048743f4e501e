"""
Estimator interface over the stepwise trainer.

``GradientBoostingRegressor`` and ``GradientBoostingClassifier`` follow the
familiar ``fit`` / ``predict`` / ``predict_proba`` conventions. They build
the training problem from arrays, drive ``GradientBoost.train_step`` and
track the training (and optional validation) loss after every iteration.
"""

from typing import List, Optional, Union
import logging

import numpy as np

from .boosting import GradientBoost
from .losses import create_loss_function
from .model import BoostingModelBase, dense_matrix
from .params import GradientBoostParams, LossFunction, Representation, TreeBuilder
from .problems import as_multivariate, prepare_problem


class GradientBoostingBase:
    """
    Shared configuration and boosting loop of the estimators.

    Second-order (Newton) gradient boosting with L1/L2 regularised leaf
    values, row and feature subsampling and a choice of tree builders.
    """

    def __init__(
        self,
        n_estimators: int = 100,
        learning_rate: float = 0.1,
        max_depth: int = 3,
        max_nodes: Optional[int] = None,
        subsample: float = 1.0,
        subfeature: float = 1.0,
        l1_reg: float = 0.0,
        l2_reg: float = 1.0,
        prune_criterion: float = 0.0,
        min_subset_weight: float = 0.0,
        dense_tree_boost: float = 0.0,
        tree_builder: Union[str, TreeBuilder] = "full",
        max_bins: int = 32,
        representation: Union[str, Representation] = "linked",
        n_jobs: int = 1,
        random_state: Optional[int] = None,
        verbose: bool = False
    ):
        """
        Args:
            n_estimators: Number of boosting iterations.
            learning_rate: Shrinkage applied to every tree output.
            max_depth: Maximum depth of individual trees.
            max_nodes: Maximum node count per tree, None for unlimited.
            subsample: Fraction of rows drawn per iteration.
            subfeature: Fraction of features drawn per iteration.
            l1_reg: L1 regularisation of leaf values.
            l2_reg: L2 regularisation of leaf values.
            prune_criterion: Splits with a smaller gain are merged back.
            min_subset_weight: Minimum total sample weight of a child node.
            dense_tree_boost: Penalty on unbalanced splits.
            tree_builder: "full", "multi_full", "fast_hist" or "multi_fast_hist".
            max_bins: Histogram bins per feature for the histogram builders.
            representation: "linked", "compact" or "quick_scorer".
            n_jobs: Number of worker threads.
            random_state: Random seed for reproducibility.
            verbose: Enable logging output.
        """
        self.n_estimators = n_estimators
        self.learning_rate = learning_rate
        self.max_depth = max_depth
        self.max_nodes = max_nodes
        self.subsample = subsample
        self.subfeature = subfeature
        self.l1_reg = l1_reg
        self.l2_reg = l2_reg
        self.prune_criterion = prune_criterion
        self.min_subset_weight = min_subset_weight
        self.dense_tree_boost = dense_tree_boost
        self.tree_builder = tree_builder
        self.max_bins = max_bins
        self.representation = representation
        self.n_jobs = n_jobs
        self.random_state = random_state
        self.verbose = verbose

        # Model state
        self.model_: Optional[BoostingModelBase] = None
        self.booster_: Optional[GradientBoost] = None

        # Training history
        self.train_scores_: List[float] = []
        self.val_scores_: List[float] = []

        self.logger = logging.getLogger(__name__)
        if self.verbose:
            logging.basicConfig(level=logging.INFO)

    def _make_params(self, loss_function: LossFunction) -> GradientBoostParams:
        return GradientBoostParams(
            loss_function=loss_function,
            iterations_count=self.n_estimators,
            learning_rate=self.learning_rate,
            subsample=self.subsample,
            subfeature=self.subfeature,
            random_state=self.random_state,
            max_tree_depth=self.max_depth,
            max_nodes_count=self.max_nodes,
            l1_reg_factor=self.l1_reg,
            l2_reg_factor=self.l2_reg,
            prune_criterion_value=self.prune_criterion,
            thread_count=self.n_jobs,
            tree_builder=TreeBuilder(self.tree_builder),
            max_bins=self.max_bins,
            min_subset_weight=self.min_subset_weight,
            dense_tree_boost_coefficient=self.dense_tree_boost,
            representation=Representation(self.representation),
            verbose=self.verbose,
        )

    def _boost(
        self,
        problem,
        loss_function: LossFunction,
        X_val=None,
        val_answers: Optional[np.ndarray] = None
    ) -> None:
        """Run the boosting loop, recording the loss after every iteration."""
        booster = GradientBoost(self._make_params(loss_function))
        loss = create_loss_function(loss_function)

        view = as_multivariate(problem)
        X_train = dense_matrix(view.get_matrix())
        train_answers = view.values.T
        F_train = np.zeros(train_answers.shape)

        track_val = X_val is not None and val_answers is not None
        if track_val:
            X_val = dense_matrix(X_val)
            F_val = np.zeros(val_answers.shape)

        self.train_scores_ = []
        self.val_scores_ = []

        done = False
        while not done:
            done = booster.train_step(problem)
            m = booster.iteration

            # Add the trees of this iteration to the running raw scores
            offset = 0
            for ensemble in booster.ensembles:
                tree = ensemble[-1]
                size = tree.value_size
                F_train[offset:offset + size] += self.learning_rate * tree.predict_matrix(X_train).T
                if track_val:
                    F_val[offset:offset + size] += self.learning_rate * tree.predict_matrix(X_val).T
                offset += size

            train_loss = loss.calc_loss_mean(F_train, train_answers)
            self.train_scores_.append(train_loss)

            if track_val:
                val_loss = loss.calc_loss_mean(F_val, val_answers)
                self.val_scores_.append(val_loss)

                if self.verbose and m % 10 == 0:
                    self.logger.info(
                        f"Iteration {m}/{self.n_estimators}: "
                        f"train_loss={train_loss:.6f}, val_loss={val_loss:.6f}"
                    )
            elif self.verbose and m % 10 == 0:
                self.logger.info(f"Iteration {m}/{self.n_estimators}: train_loss={train_loss:.6f}")

        self.model_ = booster.get_model(problem)
        self.booster_ = booster

    def _check_fitted(self) -> BoostingModelBase:
        if self.model_ is None:
            raise RuntimeError(f"{type(self).__name__} is not fitted yet, call fit() first")
        return self.model_

    @property
    def n_trees_(self) -> int:
        return self._check_fitted().get_tree_count()


class GradientBoostingRegressor(GradientBoostingBase):
    """
    Gradient boosting for regression with squared-error loss.

    A one-dimensional ``y`` trains a single ensemble; a two-dimensional ``y``
    trains one output per column (one ensemble per column, or one ensemble of
    multi-output trees with the ``multi_*`` builders).
    """

    def fit(
        self,
        X,
        y: np.ndarray,
        sample_weight: Optional[np.ndarray] = None,
        X_val=None,
        y_val: Optional[np.ndarray] = None
    ) -> "GradientBoostingRegressor":
        """
        Fit gradient boosting regressor.

        Args:
            X: Training features, shape (n_samples, n_features), dense or sparse.
            y: Training targets, shape (n_samples,) or (n_samples, n_outputs).
            sample_weight: Optional non-negative sample weights.
            X_val: Optional validation features for tracking generalisation.
            y_val: Optional validation targets.

        Returns:
            self
        """
        y = np.asarray(y, dtype=np.float64)
        kind = "regression" if y.ndim == 1 else "multivariate"
        problem = prepare_problem(X, y, kind, sample_weight)

        val_answers = None
        if y_val is not None:
            val_answers = np.asarray(y_val, dtype=np.float64).reshape(len(y_val), -1).T

        self._boost(problem, LossFunction.L2, X_val, val_answers)
        return self

    def predict(self, X) -> np.ndarray:
        """Predict regression targets."""
        return self._check_fitted().predict(X)


class GradientBoostingClassifier(GradientBoostingBase):
    """
    Gradient boosting for binary and multiclass classification.

    Binary problems train one output with the chosen loss; problems with more
    classes train one-vs-all outputs whose probabilities are normalised.

    Args:
        loss: "binomial" (logistic), "exponential" (AdaBoost) or "squared_hinge".
        **kwargs: Passed to ``GradientBoostingBase``.
    """

    def __init__(self, loss: str = "binomial", **kwargs):
        super().__init__(**kwargs)
        self.loss = loss
        self.classes_: Optional[np.ndarray] = None

    def _loss_function(self) -> LossFunction:
        loss_function = LossFunction(self.loss)
        if loss_function == LossFunction.L2:
            raise ValueError("Use GradientBoostingRegressor for the squared-error loss")
        return loss_function

    def _encode(self, y) -> np.ndarray:
        """Targets of ``y`` in the trainer's output layout, shape (n_outputs, n_samples)."""
        y = np.asarray(y).ravel()
        codes = np.searchsorted(self.classes_, y)
        codes = np.clip(codes, 0, len(self.classes_) - 1)
        if np.any(self.classes_[codes] != y):
            raise ValueError("y contains labels not seen during fit")
        if len(self.classes_) == 2:
            return (codes == 1).astype(np.float64)[None, :]
        answers = np.zeros((len(self.classes_), len(y)))
        answers[codes, np.arange(len(y))] = 1.0
        return answers

    def fit(
        self,
        X,
        y: np.ndarray,
        sample_weight: Optional[np.ndarray] = None,
        X_val=None,
        y_val: Optional[np.ndarray] = None
    ) -> "GradientBoostingClassifier":
        """
        Fit gradient boosting classifier.

        Args:
            X: Training features, shape (n_samples, n_features), dense or sparse.
            y: Class labels, shape (n_samples,).
            sample_weight: Optional non-negative sample weights.
            X_val: Optional validation features.
            y_val: Optional validation labels.

        Returns:
            self
        """
        loss_function = self._loss_function()
        problem = prepare_problem(X, y, "classification", sample_weight)
        self.classes_ = problem.classes_

        val_answers = self._encode(y_val) if y_val is not None else None
        self._boost(problem, loss_function, X_val, val_answers)
        return self

    def predict_proba(self, X) -> np.ndarray:
        """
        Predict class probabilities.

        Returns:
            Probabilities, shape (n_samples, n_classes), columns in ``classes_`` order.
        """
        return self._check_fitted().predict_proba(X)

    def predict(self, X) -> np.ndarray:
        """Predict class labels."""
        return self.classes_[self._check_fitted().classify(X)]
