"""
Tree-builder back ends for gradient boosting.

Every back end grows one regression tree from per-row gradients, Hessians
and weights using the second-order (Newton) objective:

    leaf value  = -soft(G, l1) / (H + l2)
    node score  = sum over outputs of soft(G, l1)^2 / (H + l2)
    split gain  = (score(left) + score(right) - score(parent)) / 2

where G and H are gradient and Hessian sums of the rows in a node and
soft() is soft thresholding by the L1 factor.

Two split searches are available, each in a single-output flavour (one
tree per output) and a multi-output flavour (one tree for all outputs):

- full scan: exact search over the sorted feature values of the active rows
  (``FullProblem`` + ``FullTreeBuilder``);
- histogram: search over per-feature quantile bins computed once
  (``FastHistProblem`` + ``FastHistTreeBuilder``).

References:
- Chen, T. & Guestrin, C. (2016). XGBoost: A scalable tree boosting system. KDD.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy import sparse

from .cache import run_partitioned
from .problems import dense_rows
from .sampling import ActiveSet
from .tree import RegressionTreeNode

logger = logging.getLogger(__name__)

# Minimum Hessian sum of a child node
MIN_SUBSET_HESSIAN = 1e-3


@dataclass
class TreeBuilderParams:
    """Parameters shared by all tree-builder back ends."""

    l1_reg_factor: float = 0.0
    l2_reg_factor: float = 1.0
    min_subset_hessian: float = MIN_SUBSET_HESSIAN
    thread_count: int = 1
    max_tree_depth: int = 10
    max_nodes_count: Optional[int] = None
    prune_criterion_value: float = 0.0
    max_bins: int = 32
    min_subset_weight: float = 0.0
    dense_tree_boost_coefficient: float = 0.0


# =====================
# Newton statistics
# =====================

def _soft_threshold(gradients: np.ndarray, l1: float) -> np.ndarray:
    if l1 == 0:
        return gradients
    return np.sign(gradients) * np.maximum(np.abs(gradients) - l1, 0.0)


def leaf_value(gradient_sums: np.ndarray, hessian_sums: np.ndarray,
               params: TreeBuilderParams) -> np.ndarray:
    """Optimal leaf value per output for the given sums."""
    denominator = hessian_sums + params.l2_reg_factor
    numerator = -_soft_threshold(gradient_sums, params.l1_reg_factor)
    return np.divide(numerator, denominator, out=np.zeros_like(numerator, dtype=np.float64),
                     where=denominator > 0)


def node_score(gradient_sums: np.ndarray, hessian_sums: np.ndarray,
               params: TreeBuilderParams) -> np.ndarray:
    """Objective reduction of a leaf, summed over outputs (last axis)."""
    soft = _soft_threshold(gradient_sums, params.l1_reg_factor)
    denominator = hessian_sums + params.l2_reg_factor
    terms = np.divide(soft * soft, denominator, out=np.zeros_like(soft, dtype=np.float64),
                      where=denominator > 0)
    return terms.sum(axis=-1)


def split_gains(
    left_gradients: np.ndarray,
    left_hessians: np.ndarray,
    left_weights: np.ndarray,
    total_gradients: np.ndarray,
    total_hessians: np.ndarray,
    total_weight: float,
    params: TreeBuilderParams
) -> np.ndarray:
    """
    Gain of every candidate split; -inf where a child violates the limits.

    Left statistics have shape (n_candidates, n_outputs) and (n_candidates,)
    for weights; the right side is the total minus the left side.
    """
    right_gradients = total_gradients - left_gradients
    right_hessians = total_hessians - left_hessians
    right_weights = total_weight - left_weights

    gains = 0.5 * (
        node_score(left_gradients, left_hessians, params)
        + node_score(right_gradients, right_hessians, params)
        - node_score(total_gradients, total_hessians, params)
    )
    if params.dense_tree_boost_coefficient > 0 and total_weight > 0:
        imbalance = np.abs(left_weights - right_weights) / total_weight
        gains = gains - params.dense_tree_boost_coefficient * imbalance

    valid = (
        (left_hessians.sum(axis=1) >= params.min_subset_hessian)
        & (right_hessians.sum(axis=1) >= params.min_subset_hessian)
        & (left_weights >= params.min_subset_weight)
        & (right_weights >= params.min_subset_weight)
    )
    return np.where(valid, gains, -np.inf)


@dataclass
class SplitCandidate:
    gain: float
    feature: int
    threshold: float
    goes_left: np.ndarray


# =====================
# Problem views
# =====================

class FullProblem:
    """
    Dense feature matrix restricted to the active rows and features.

    The view shares the trainer's ``ActiveSet``; ``update()`` must be called
    whenever the active rows or features change.
    """

    def __init__(self, problem, active: ActiveSet):
        self.problem = problem
        self.active = active
        self.matrix: Optional[np.ndarray] = None

    def update(self) -> None:
        """Reload the active submatrix, column-major."""
        source = self.problem.get_matrix()
        if sparse.issparse(source):
            rows = sparse.coo_matrix(source[self.active.used_vectors])
            # renumber the columns of the used features, drop the others
            numbers = self.active.feature_numbers[rows.col]
            kept = numbers >= 0
            compact = sparse.coo_matrix(
                (rows.data[kept], (rows.row[kept], numbers[kept])),
                shape=(rows.shape[0], len(self.active.used_features)),
            )
            dense = compact.toarray()
        else:
            dense = np.asarray(source)[np.ix_(self.active.used_vectors, self.active.used_features)]
        self.matrix = np.asfortranarray(dense, dtype=np.float64)

    @property
    def used_features(self) -> np.ndarray:
        return self.active.used_features


class FastHistProblem:
    """
    Binned copy of the whole feature matrix.

    Bin edges are computed once per feature from all rows: with at most
    ``max_bins`` distinct values the edges are midpoints between them,
    otherwise they are quantiles. A value ``x`` falls into bin
    ``searchsorted(edges, x)``, so ``bin <= b`` exactly when ``x <= edges[b]``.
    """

    def __init__(self, max_bins: int, problem, active: ActiveSet):
        self.max_bins = max_bins
        self.active = active
        dense = dense_rows(problem.get_matrix(), np.arange(problem.vector_count))
        self.edges: List[np.ndarray] = []
        self.codes = np.empty(dense.shape, dtype=np.int32)
        for feature in range(dense.shape[1]):
            edges = self._feature_edges(dense[:, feature], max_bins)
            self.edges.append(edges)
            self.codes[:, feature] = np.searchsorted(edges, dense[:, feature], side="left")
        logger.debug(
            f"Binned {dense.shape[1]} features into at most "
            f"{max((len(e) + 1 for e in self.edges), default=0)} bins"
        )

    @staticmethod
    def _feature_edges(column: np.ndarray, max_bins: int) -> np.ndarray:
        distinct = np.unique(column)
        if len(distinct) <= max_bins:
            return (distinct[:-1] + distinct[1:]) / 2.0
        quantiles = np.quantile(column, np.linspace(0.0, 1.0, max_bins + 1)[1:-1])
        edges = np.unique(quantiles)
        # the largest value must stay right of every edge
        return edges[edges < distinct[-1]]

    def bin_count(self, feature: int) -> int:
        return len(self.edges[feature]) + 1

    def active_codes(self) -> np.ndarray:
        """Bin codes of the active rows and features."""
        return self.codes[np.ix_(self.active.used_vectors, self.active.used_features)]

    @property
    def used_features(self) -> np.ndarray:
        return self.active.used_features


# =====================
# Tree growing
# =====================

class _GrowingNode:
    __slots__ = ("tree", "rows", "gradient_sums", "hessian_sums", "weight_sum", "depth")

    def __init__(self, tree, rows, gradient_sums, hessian_sums, weight_sum, depth):
        self.tree = tree
        self.rows = rows
        self.gradient_sums = gradient_sums
        self.hessian_sums = hessian_sums
        self.weight_sum = weight_sum
        self.depth = depth


class TreeBuilderBase(ABC):
    """
    Grows a tree breadth-first, then prunes weak splits bottom-up.

    Parameters
    ----------
    params : TreeBuilderParams
        Regularisation and size limits.
    multi : bool
        If True, ``build`` takes statistics of shape (n_outputs, n_rows) and
        grows one tree whose leaves hold all outputs. Otherwise it takes
        statistics of a single output, shape (n_rows,).
    """

    def __init__(self, params: TreeBuilderParams, multi: bool = False):
        self.params = params
        self.multi = multi

    def build(
        self,
        problem,
        gradients: np.ndarray,
        gradient_sums,
        hessians: np.ndarray,
        hessian_sums,
        weights: np.ndarray,
        weight_sum: float
    ) -> RegressionTreeNode:
        """
        Grow one tree for the active rows of ``problem``.

        Raises:
            ValueError: If the statistics do not match the builder flavour.
        """
        gradients = np.asarray(gradients, dtype=np.float64)
        hessians = np.asarray(hessians, dtype=np.float64)
        if self.multi:
            if gradients.ndim != 2:
                raise ValueError("Multi-output builder expects (n_outputs, n_rows) statistics")
        else:
            if gradients.ndim != 1:
                raise ValueError("Single-output builder expects (n_rows,) statistics")
            gradients = gradients[None, :]
            hessians = hessians[None, :]
        if gradients.shape != hessians.shape:
            raise ValueError(
                f"Gradient and Hessian shapes differ: {gradients.shape} vs {hessians.shape}"
            )
        weights = np.asarray(weights, dtype=np.float64)
        if weights.shape[0] != gradients.shape[1]:
            raise ValueError(
                f"Expected {gradients.shape[1]} weights, got {weights.shape[0]}"
            )

        # row-major statistics: (n_rows, n_outputs)
        row_gradients = np.ascontiguousarray(gradients.T)
        row_hessians = np.ascontiguousarray(hessians.T)
        self._prepare(problem)

        root = RegressionTreeNode()
        gains: Dict[int, Tuple[float, np.ndarray]] = {}
        node_limit = self.params.max_nodes_count
        node_count = 1
        queue = deque([_GrowingNode(
            root,
            np.arange(gradients.shape[1]),
            np.atleast_1d(np.asarray(gradient_sums, dtype=np.float64)),
            np.atleast_1d(np.asarray(hessian_sums, dtype=np.float64)),
            float(weight_sum),
            0,
        )])

        while queue:
            node = queue.popleft()
            value = leaf_value(node.gradient_sums, node.hessian_sums, self.params)
            node.tree.make_leaf(value)

            if node.depth >= self.params.max_tree_depth or len(node.rows) < 2:
                continue
            if node_limit is not None and node_count + 2 > node_limit:
                continue

            candidate = self._find_split(
                node, row_gradients, row_hessians, weights
            )
            if candidate is None:
                continue

            left_rows = node.rows[candidate.goes_left]
            right_rows = node.rows[~candidate.goes_left]
            left, right = RegressionTreeNode(), RegressionTreeNode()
            node.tree.split(candidate.feature, candidate.threshold, left, right)
            gains[id(node.tree)] = (candidate.gain, value)
            node_count += 2

            left_gradients = row_gradients[left_rows].sum(axis=0)
            left_hessians = row_hessians[left_rows].sum(axis=0)
            left_weight = float(weights[left_rows].sum())
            queue.append(_GrowingNode(left, left_rows, left_gradients, left_hessians,
                                      left_weight, node.depth + 1))
            queue.append(_GrowingNode(right, right_rows,
                                      node.gradient_sums - left_gradients,
                                      node.hessian_sums - left_hessians,
                                      node.weight_sum - left_weight, node.depth + 1))

        self._prune(root, gains)
        logger.debug(f"Built tree with {root.node_count()} nodes, depth {root.depth()}")
        return root

    def _prune(self, root: RegressionTreeNode, gains: Dict[int, Tuple[float, np.ndarray]]) -> None:
        """Merge splits with leaf children whose gain is below the prune value."""
        if self.params.prune_criterion_value <= 0:
            return
        merged = 0
        # reversed pre-order visits children before their parents
        for node in reversed(list(root.iter_nodes())):
            if node.is_leaf or not (node.left.is_leaf and node.right.is_leaf):
                continue
            gain, value = gains[id(node)]
            if gain < self.params.prune_criterion_value:
                node.make_leaf(value)
                merged += 1
        if merged:
            logger.debug(f"Pruned {merged} splits")

    def _find_split(self, node: _GrowingNode, row_gradients: np.ndarray,
                    row_hessians: np.ndarray, weights: np.ndarray) -> Optional[SplitCandidate]:
        """Best split over all active features, searched in parallel."""
        feature_count = self._feature_count()
        results: List[Optional[SplitCandidate]] = [None] * feature_count

        def search(start: int, stop: int) -> None:
            for local in range(start, stop):
                results[local] = self._best_feature_split(
                    local, node, row_gradients, row_hessians, weights
                )

        run_partitioned(feature_count, self.params.thread_count, search)

        best = None
        for candidate in results:
            if candidate is not None and (best is None or candidate.gain > best.gain):
                best = candidate
        return best

    def _pick(self, gains: np.ndarray) -> Optional[int]:
        if len(gains) == 0:
            return None
        position = int(np.argmax(gains))
        if not gains[position] > 0:
            return None
        return position

    @abstractmethod
    def _prepare(self, problem) -> None:
        """Capture the problem data needed by ``_best_feature_split``."""

    @abstractmethod
    def _feature_count(self) -> int:
        pass

    @abstractmethod
    def _best_feature_split(self, local: int, node: _GrowingNode, row_gradients: np.ndarray,
                            row_hessians: np.ndarray,
                            weights: np.ndarray) -> Optional[SplitCandidate]:
        pass


class FullTreeBuilder(TreeBuilderBase):
    """Exact split search over sorted feature values."""

    def _prepare(self, problem: FullProblem) -> None:
        if problem.matrix is None:
            problem.update()
        self._matrix = problem.matrix
        self._features = problem.used_features

    def _feature_count(self) -> int:
        return self._matrix.shape[1]

    def _best_feature_split(self, local, node, row_gradients, row_hessians, weights):
        values = self._matrix[node.rows, local]
        order = np.argsort(values, kind="stable")
        sorted_values = values[order]
        # a split after position i needs a strictly larger value at i + 1
        boundaries = np.flatnonzero(sorted_values[:-1] < sorted_values[1:])
        if len(boundaries) == 0:
            return None

        ordered_rows = node.rows[order]
        left_gradients = np.cumsum(row_gradients[ordered_rows], axis=0)[boundaries]
        left_hessians = np.cumsum(row_hessians[ordered_rows], axis=0)[boundaries]
        left_weights = np.cumsum(weights[ordered_rows])[boundaries]

        gains = split_gains(left_gradients, left_hessians, left_weights, node.gradient_sums,
                            node.hessian_sums, node.weight_sum, self.params)
        position = self._pick(gains)
        if position is None:
            return None

        boundary = boundaries[position]
        low, high = sorted_values[boundary], sorted_values[boundary + 1]
        threshold = low + (high - low) / 2.0
        if not low <= threshold < high:
            threshold = low
        return SplitCandidate(float(gains[position]), int(self._features[local]),
                              float(threshold), values <= threshold)


class FastHistTreeBuilder(TreeBuilderBase):
    """Split search over histogram bins of the active features."""

    def _prepare(self, problem: FastHistProblem) -> None:
        self._problem = problem
        self._codes = problem.active_codes()
        self._features = problem.used_features

    def _feature_count(self) -> int:
        return self._codes.shape[1]

    def _best_feature_split(self, local, node, row_gradients, row_hessians, weights):
        feature = int(self._features[local])
        bins = self._codes[node.rows, local]
        bin_count = self._problem.bin_count(feature)
        if bin_count < 2:
            return None

        counts = np.bincount(bins, minlength=bin_count)
        gradient_hist = np.stack([
            np.bincount(bins, weights=row_gradients[node.rows, output], minlength=bin_count)
            for output in range(row_gradients.shape[1])
        ], axis=1)
        hessian_hist = np.stack([
            np.bincount(bins, weights=row_hessians[node.rows, output], minlength=bin_count)
            for output in range(row_hessians.shape[1])
        ], axis=1)
        weight_hist = np.bincount(bins, weights=weights[node.rows], minlength=bin_count)

        # candidate b puts bins [0, b] on the left
        left_counts = np.cumsum(counts)[:-1]
        boundaries = np.flatnonzero((left_counts > 0) & (left_counts < len(node.rows)))
        if len(boundaries) == 0:
            return None

        left_gradients = np.cumsum(gradient_hist, axis=0)[boundaries]
        left_hessians = np.cumsum(hessian_hist, axis=0)[boundaries]
        left_weights = np.cumsum(weight_hist)[boundaries]

        gains = split_gains(left_gradients, left_hessians, left_weights, node.gradient_sums,
                            node.hessian_sums, node.weight_sum, self.params)
        position = self._pick(gains)
        if position is None:
            return None

        boundary = int(boundaries[position])
        return SplitCandidate(float(gains[position]), feature,
                              float(self._problem.edges[feature][boundary]), bins <= boundary)
