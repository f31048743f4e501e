"""
Training configuration for gradient boosting.

All parameters of a training run live in one immutable ``GradientBoostParams``
object. It is validated once, when the trainer is constructed, before any
problem data is read.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import numpy as np


class LossFunction(Enum):
    """Loss minimised by the boosting procedure."""

    BINOMIAL = "binomial"
    EXPONENTIAL = "exponential"
    SQUARED_HINGE = "squared_hinge"
    L2 = "l2"


class TreeBuilder(Enum):
    """Tree-growing back end used on every boosting iteration."""

    FULL = "full"
    MULTI_FULL = "multi_full"
    FAST_HIST = "fast_hist"
    MULTI_FAST_HIST = "multi_fast_hist"

    @property
    def is_multi(self) -> bool:
        """Whether one tree predicts all outputs jointly."""
        return self in (TreeBuilder.MULTI_FULL, TreeBuilder.MULTI_FAST_HIST)


class Representation(Enum):
    """Layout of the model returned once training is finished."""

    LINKED = "linked"
    COMPACT = "compact"
    QUICK_SCORER = "quick_scorer"


@dataclass(frozen=True)
class GradientBoostParams:
    """
    Parameters of one gradient boosting run.

    Attributes:
        loss_function: Loss to minimise.
        iterations_count: Number of boosting iterations (trees per ensemble).
        learning_rate: Shrinkage applied to every tree output.
        subsample: Fraction of rows drawn on each iteration, in [0, 1].
        subfeature: Fraction of features drawn on each iteration, in [0, 1].
        random_state: Seed or ``np.random.Generator`` used for sampling.
        max_tree_depth: Maximum depth of a tree; 0 grows a single leaf.
        max_nodes_count: Maximum node count of a tree; None (or -1) is unlimited.
        l1_reg_factor: L1 regularisation of leaf values.
        l2_reg_factor: L2 regularisation of leaf values.
        prune_criterion_value: Splits whose gain is below this value are merged
            back after the tree is grown; 0 disables pruning.
        thread_count: Number of worker threads.
        tree_builder: Tree-growing back end.
        max_bins: Maximum histogram bins per feature (histogram back ends).
        min_subset_weight: Minimum total vector weight of a child node.
        dense_tree_boost_coefficient: Penalty on unbalanced splits; larger
            values favour dense (balanced) trees.
        representation: Output model layout.
        verbose: Log progress at INFO level.
    """

    loss_function: LossFunction = LossFunction.BINOMIAL
    iterations_count: int = 100
    learning_rate: float = 0.1
    subsample: float = 0.66
    subfeature: float = 1.0
    random_state: Optional[Union[int, np.random.Generator]] = None
    max_tree_depth: int = 10
    max_nodes_count: Optional[int] = None
    l1_reg_factor: float = 0.0
    l2_reg_factor: float = 1.0
    prune_criterion_value: float = 0.0
    thread_count: int = 1
    tree_builder: TreeBuilder = TreeBuilder.FULL
    max_bins: int = 32
    min_subset_weight: float = 0.0
    dense_tree_boost_coefficient: float = 0.0
    representation: Representation = Representation.LINKED
    verbose: bool = False

    @property
    def node_limit(self) -> Optional[int]:
        """Maximum node count, None when unlimited."""
        if self.max_nodes_count is None or self.max_nodes_count == -1:
            return None
        return self.max_nodes_count

    def validate(self) -> None:
        """
        Check every parameter invariant.

        Raises:
            ValueError: If any parameter is out of its valid range.
        """
        if not isinstance(self.loss_function, LossFunction):
            raise ValueError(f"Unknown loss function: {self.loss_function!r}")
        if not isinstance(self.tree_builder, TreeBuilder):
            raise ValueError(f"Unknown tree builder: {self.tree_builder!r}")
        if not isinstance(self.representation, Representation):
            raise ValueError(f"Unknown model representation: {self.representation!r}")
        if self.iterations_count <= 0:
            raise ValueError(f"iterations_count must be positive, got {self.iterations_count}")
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")
        if not 0.0 <= self.subsample <= 1.0:
            raise ValueError(f"subsample must be in [0, 1], got {self.subsample}")
        if not 0.0 <= self.subfeature <= 1.0:
            raise ValueError(f"subfeature must be in [0, 1], got {self.subfeature}")
        if self.max_tree_depth < 0:
            raise ValueError(f"max_tree_depth must be non-negative, got {self.max_tree_depth}")
        if self.max_nodes_count is not None and self.max_nodes_count < -1:
            raise ValueError(
                f"max_nodes_count must be non-negative or unlimited, got {self.max_nodes_count}"
            )
        if self.l1_reg_factor < 0 or self.l2_reg_factor < 0:
            raise ValueError("Regularisation factors must be non-negative")
        if self.prune_criterion_value < 0:
            raise ValueError(
                f"prune_criterion_value must be non-negative, got {self.prune_criterion_value}"
            )
        if self.thread_count <= 0:
            raise ValueError(f"thread_count must be positive, got {self.thread_count}")
        if self.max_bins < 2:
            raise ValueError(f"max_bins must be at least 2, got {self.max_bins}")
        if self.min_subset_weight < 0:
            raise ValueError(f"min_subset_weight must be non-negative, got {self.min_subset_weight}")
        if self.dense_tree_boost_coefficient < 0:
            raise ValueError("dense_tree_boost_coefficient must be non-negative")

    def make_random(self) -> np.random.Generator:
        """Random generator used for row and feature sampling."""
        if isinstance(self.random_state, np.random.Generator):
            return self.random_state
        return np.random.default_rng(self.random_state)
