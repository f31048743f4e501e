"""
Gradient boosting trainer.

``GradientBoost`` drives the boosting loop one iteration at a time:

1. The caller's problem (classification, regression or multivariate
   regression) is adapted once to a multivariate regression view with all
   zero-weight rows removed.
2. Every ``train_step`` draws the active rows and features, refreshes the
   prediction cache for the active rows, turns the predictions into weighted
   gradients and Hessians, grows one tree per output (or one multi-output
   tree) and appends the new trees to the ensemble.
3. ``get_model`` scores the whole dataset to compute the final loss, releases
   the training state and returns the requested model representation.

Training can be checkpointed with ``save``/``load`` at any iteration and
resumed bit-for-bit.
"""

import dataclasses
import logging
from contextlib import contextmanager
from enum import Enum
from typing import BinaryIO, Callable, Dict, List, Optional

from .aggregator import StatisticsAggregator
from .archive import Archive
from .builders import (
    FastHistProblem, FastHistTreeBuilder, FullProblem, FullTreeBuilder,
    MIN_SUBSET_HESSIAN, TreeBuilderParams,
)
from .cache import PredictionCache
from .losses import create_loss_function
from .model import BoostingModelBase, GradientBoostModel
from .params import GradientBoostParams, LossFunction, Representation, TreeBuilder
from .problems import as_multivariate
from .quick_scorer import QuickScorerModel
from .sampling import ActiveSet, generate_random_array, sample_size
from .tree import RegressionTreeNode

logger = logging.getLogger(__name__)


class TrainingState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    STEPPING = "stepping"
    FINALIZED = "finalized"


def _compact(model: GradientBoostModel) -> GradientBoostModel:
    model.convert_to_compact()
    return model


_REPRESENTATIONS: Dict[Representation, Callable[[GradientBoostModel], BoostingModelBase]] = {
    Representation.LINKED: lambda model: model,
    Representation.COMPACT: _compact,
    Representation.QUICK_SCORER: QuickScorerModel,
}


def create_output_representation(
    ensembles: List[List[RegressionTreeNode]],
    prediction_size: int,
    learning_rate: float,
    loss_function: LossFunction,
    representation: Representation
) -> BoostingModelBase:
    """Wrap trained ensembles in the requested model layout."""
    try:
        build = _REPRESENTATIONS[representation]
    except KeyError:
        raise ValueError(f"Unknown model representation: {representation!r}") from None
    return build(GradientBoostModel(ensembles, prediction_size, learning_rate, loss_function))


class GradientBoost:
    """
    Stepwise gradient boosting trainer.

    Parameters
    ----------
    params : GradientBoostParams, optional
        Training configuration. Keyword arguments override its fields.

    Raises
    ------
    ValueError
        If the configuration is invalid.

    Examples
    --------
    >>> booster = GradientBoost(iterations_count=50, loss_function=LossFunction.L2)
    >>> model = booster.train(RegressionProblem(X, y))
    >>> model.predict(X)
    """

    def __init__(self, params: Optional[GradientBoostParams] = None, **overrides):
        params = params if params is not None else GradientBoostParams()
        if overrides:
            params = dataclasses.replace(params, **overrides)
        params.validate()
        self.params = params
        self.random = params.make_random()

        self.ensembles: List[List[RegressionTreeNode]] = []
        self.predict_cache: Optional[PredictionCache] = None
        self.last_loss = 0.0
        self.state = TrainingState.UNINITIALIZED

        self._source_problem = None
        self._base_problem = None
        self._loss = None
        self._active: Optional[ActiveSet] = None
        self._aggregator: Optional[StatisticsAggregator] = None
        self._tree_builder = None
        self._full_problem: Optional[FullProblem] = None
        self._fast_hist_problem: Optional[FastHistProblem] = None

        if params.verbose:
            logger.setLevel(logging.INFO)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_multi_trees_model(self) -> bool:
        return self.params.tree_builder.is_multi

    @property
    def iteration(self) -> int:
        """Number of boosting iterations performed so far."""
        return len(self.ensembles[0]) if self.ensembles else 0

    def train_step(self, problem) -> bool:
        """
        Perform one boosting iteration.

        The first call adapts ``problem``; later calls reuse that adaptation
        until the model is finalized, even if a different problem is passed.

        Returns
        -------
        bool
            True once the configured number of iterations is reached.
        """
        self._prepare_problem(problem)
        with self._teardown_on_error():
            logger.info(f"Boost iteration {self.iteration}")
            new_trees = self._execute_step()

        for ensemble, tree in zip(self.ensembles, new_trees):
            ensemble.append(tree)
        self.state = TrainingState.STEPPING
        return self.iteration >= self.params.iterations_count

    def train(self, problem) -> BoostingModelBase:
        """Run ``train_step`` until completion and return the model."""
        while not self.train_step(problem):
            pass
        return self.get_model(problem)

    def get_model(self, problem) -> BoostingModelBase:
        """
        Finalize training and return the model built so far.

        Computes ``last_loss`` over the whole dataset, then releases the tree
        builder and the prediction cache.
        """
        self._prepare_problem(problem)
        base_problem = self._base_problem

        predicts, answers = self._aggregator.build_full_predictions(
            base_problem, self.ensembles, self.predict_cache
        )
        self.last_loss = self._loss.calc_loss_mean(predicts, answers)
        logger.info(f"Training finished after {self.iteration} iterations, loss={self.last_loss:.6f}")

        prediction_size = base_problem.value_size if self.is_multi_trees_model else 1
        self._destroy_tree_builder()
        self.predict_cache = None
        self.state = TrainingState.FINALIZED

        return create_output_representation(
            self.ensembles, prediction_size, self.params.learning_rate,
            self.params.loss_function, self.params.representation
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def save(self, stream: BinaryIO) -> None:
        """
        Write the ensembles and the prediction cache.

        Layout: ensemble count; if non-zero, iteration count and every tree,
        ensemble-major; then the prediction cache.
        """
        archive = Archive(stream)
        archive.write_int(len(self.ensembles))
        if self.ensembles:
            archive.write_int(len(self.ensembles[0]))
            for ensemble in self.ensembles:
                for tree in ensemble:
                    tree.write(archive)
        if self.predict_cache is not None:
            self.predict_cache.write(archive)
        else:
            PredictionCache.write_empty(archive)

    def load(self, stream: BinaryIO) -> None:
        """
        Restore a state written by ``save``.

        Any adapted problem is released; the next ``train_step`` adapts its
        problem again and continues from the restored iteration.
        """
        archive = Archive(stream)
        ensembles: List[List[RegressionTreeNode]] = []
        ensemble_count = archive.read_int()
        if ensemble_count > 0:
            iterations_count = archive.read_int()
            for _ in range(ensemble_count):
                ensembles.append(
                    [RegressionTreeNode.read(archive) for _ in range(iterations_count)]
                )
        cache = PredictionCache.read(archive)

        self._destroy_tree_builder()
        self.ensembles = ensembles
        self.predict_cache = cache
        logger.info(f"Restored {ensemble_count} ensembles at iteration {self.iteration}")

    def save_checkpoint(self, path: str) -> None:
        with open(path, "wb") as stream:
            self.save(stream)

    def load_checkpoint(self, path: str) -> None:
        with open(path, "rb") as stream:
            self.load(stream)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prepare_problem(self, problem) -> None:
        if self._base_problem is None:
            self._base_problem = as_multivariate(problem)
            self._source_problem = problem
            self._initialize()
        elif problem is not self._source_problem:
            logger.warning(
                "A different problem was passed while training; "
                "the problem adapted on the first call is used"
            )

    def _initialize(self) -> None:
        base_problem = self._base_problem
        value_size = base_problem.value_size
        vector_count = base_problem.vector_count
        feature_count = base_problem.feature_count
        if value_size < 1 or vector_count < 1 or feature_count < 1:
            self._destroy_tree_builder()
            raise ValueError(
                f"Problem must have rows, features and outputs, got {vector_count} rows, "
                f"{feature_count} features and {value_size} outputs"
            )

        ensemble_count = 1 if self.is_multi_trees_model else value_size
        with self._teardown_on_error():
            if not self.ensembles:
                self.ensembles = [[] for _ in range(ensemble_count)]
            elif len(self.ensembles) != ensemble_count:
                raise ValueError(
                    f"Restored model has {len(self.ensembles)} ensembles, "
                    f"the problem needs {ensemble_count}"
                )

            if self.predict_cache is None:
                self.predict_cache = PredictionCache(value_size, vector_count)
            elif (self.predict_cache.value_size, self.predict_cache.vector_count) != (
                    value_size, vector_count):
                raise ValueError(
                    f"Prediction cache shape {self.predict_cache.values.shape} does not match "
                    f"the problem ({value_size}, {vector_count})"
                )

            self._loss = create_loss_function(self.params.loss_function)
            self._active = ActiveSet(vector_count, feature_count)
            self._aggregator = StatisticsAggregator(
                self.params.thread_count, self.params.learning_rate, self.is_multi_trees_model
            )
            self._create_tree_builder()

            if (self._full_problem is not None
                    and self.params.subsample == 1.0 and self.params.subfeature == 1.0):
                self._full_problem.update()
        self.state = TrainingState.READY

    def _create_tree_builder(self) -> None:
        params = self.params
        builder_params = TreeBuilderParams(
            l1_reg_factor=params.l1_reg_factor,
            l2_reg_factor=params.l2_reg_factor,
            min_subset_hessian=MIN_SUBSET_HESSIAN,
            thread_count=params.thread_count,
            max_tree_depth=params.max_tree_depth,
            max_nodes_count=params.node_limit,
            prune_criterion_value=params.prune_criterion_value,
            max_bins=params.max_bins,
            min_subset_weight=params.min_subset_weight,
            dense_tree_boost_coefficient=params.dense_tree_boost_coefficient,
        )
        kind = params.tree_builder
        if kind in (TreeBuilder.FULL, TreeBuilder.MULTI_FULL):
            self._tree_builder = FullTreeBuilder(builder_params, multi=kind.is_multi)
            self._full_problem = FullProblem(self._base_problem, self._active)
        elif kind in (TreeBuilder.FAST_HIST, TreeBuilder.MULTI_FAST_HIST):
            self._tree_builder = FastHistTreeBuilder(builder_params, multi=kind.is_multi)
            self._fast_hist_problem = FastHistProblem(
                builder_params.max_bins, self._base_problem, self._active
            )
        else:
            raise ValueError(f"Unknown tree builder: {kind!r}")

    def _destroy_tree_builder(self) -> None:
        self._tree_builder = None
        self._full_problem = None
        self._fast_hist_problem = None
        self._base_problem = None
        self._source_problem = None
        self.state = TrainingState.UNINITIALIZED

    @contextmanager
    def _teardown_on_error(self):
        """Release the tree builder and problem views if the block raises."""
        try:
            yield
        except Exception:
            self._destroy_tree_builder()
            raise

    def _execute_step(self) -> List[RegressionTreeNode]:
        """Grow the trees of one iteration without touching the ensembles."""
        params = self.params
        base_problem = self._base_problem
        active = self._active

        if params.subsample < 1.0:
            count = base_problem.vector_count
            active.set_vectors(
                generate_random_array(self.random, count, sample_size(count, params.subsample))
            )
        if params.subfeature < 1.0:
            count = base_problem.feature_count
            active.set_features(
                generate_random_array(self.random, count, sample_size(count, params.subfeature))
            )

        stats = self._aggregator.collect(
            base_problem, self.ensembles, self.predict_cache, active.used_vectors, self._loss
        )

        if params.subsample != 1.0 or params.subfeature != 1.0:
            # the active rows or features changed, reload them
            if self._full_problem is not None:
                self._full_problem.update()
        view = self._full_problem if self._full_problem is not None else self._fast_hist_problem

        if self.is_multi_trees_model:
            return [self._tree_builder.build(
                view, stats.gradients, stats.gradient_sums, stats.hessians,
                stats.hessian_sums, stats.weights, stats.weight_sum
            )]
        return [
            self._tree_builder.build(
                view, stats.gradients[output], stats.gradient_sums[output],
                stats.hessians[output], stats.hessian_sums[output],
                stats.weights, stats.weight_sum
            )
            for output in range(base_problem.value_size)
        ]
