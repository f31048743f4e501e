"""
QuickScorer layout of a trained ensemble.

Every tree's leaves are numbered left to right and every split node gets a
bitmask with zeros on the leaves of its left subtree. Conditions of all
trees are grouped by feature and sorted by threshold. Scoring a row only
visits the conditions that are false for it (``x[feature] > threshold``),
AND-ing their masks into the tree's bitvector; the exit leaf of a tree is
the lowest bit left set.

Reference:
- Lucchese, C. et al. (2015). QuickScorer: A fast algorithm to rank documents
  with additive ensembles of regression trees. SIGIR.
"""

import logging
from typing import Dict, List, Tuple

import numpy as np

from .model import BoostingModelBase, GradientBoostModel
from .tree import RegressionTreeNode

logger = logging.getLogger(__name__)

_WORD_BITS = 64


def _leaf_masks(root: RegressionTreeNode) -> Tuple[List[np.ndarray], List[Tuple[int, float, int, int]]]:
    """
    Leaf values in left-to-right order and the split conditions of a tree.

    Each condition is (feature, threshold, start, stop) where [start, stop)
    are the numbers of the leaves in the left subtree of the split.
    """
    leaves: List[np.ndarray] = []
    conditions = []

    def visit(node: RegressionTreeNode) -> Tuple[int, int]:
        if node.is_leaf:
            leaves.append(node.value)
            return len(leaves) - 1, len(leaves)
        start, middle = visit(node.left)
        _, stop = visit(node.right)
        conditions.append((node.feature, node.threshold, start, middle))
        return start, stop

    visit(root)
    return leaves, conditions


class QuickScorerModel(BoostingModelBase):
    """
    Inference-only model built from a linked ``GradientBoostModel``.

    Attributes:
        leaf_values: Leaf values of all trees, shape (n_trees, max_leaves, prediction_size).
        tree_outputs: Column offset of each tree's output in the raw prediction.
        features: Mapping feature -> (thresholds, tree indices, masks), sorted by threshold.
    """

    def __init__(self, model: GradientBoostModel):
        self.learning_rate = model.learning_rate
        self.loss_function = model.loss_function
        self.prediction_size = model.prediction_size
        self._value_size = model.value_size
        self._tree_count = model.get_tree_count()

        trees = []
        offsets = []
        for index, ensemble in enumerate(model.ensembles):
            for tree in ensemble:
                if not isinstance(tree, RegressionTreeNode):
                    raise ValueError("QuickScorer needs a linked model, not a compact one")
                trees.append(tree)
                offsets.append(index * self.prediction_size)
        self.tree_outputs = np.asarray(offsets, dtype=np.int64)

        per_tree = [_leaf_masks(tree) for tree in trees]
        max_leaves = max((len(leaves) for leaves, _ in per_tree), default=1)
        self.word_count = (max_leaves + _WORD_BITS - 1) // _WORD_BITS
        self.leaf_values = np.zeros((len(trees), max_leaves, self.prediction_size))

        grouped: Dict[int, List[Tuple[float, int, np.ndarray]]] = {}
        for tree_index, (leaves, conditions) in enumerate(per_tree):
            self.leaf_values[tree_index, :len(leaves)] = leaves
            for feature, threshold, start, stop in conditions:
                grouped.setdefault(feature, []).append(
                    (threshold, tree_index, self._mask(start, stop))
                )

        self.features: Dict[int, Tuple[np.ndarray, np.ndarray, np.ndarray]] = {}
        for feature, entries in grouped.items():
            entries.sort(key=lambda entry: entry[0])
            self.features[feature] = (
                np.array([entry[0] for entry in entries]),
                np.array([entry[1] for entry in entries], dtype=np.int64),
                np.stack([entry[2] for entry in entries]),
            )
        logger.debug(
            f"QuickScorer built: {len(trees)} trees, {max_leaves} max leaves, "
            f"{len(self.features)} features"
        )

    def _mask(self, start: int, stop: int) -> np.ndarray:
        """All ones except bits [start, stop)."""
        cleared = ((1 << (stop - start)) - 1) << start
        mask = ((1 << (self.word_count * _WORD_BITS)) - 1) ^ cleared
        word_mask = (1 << _WORD_BITS) - 1
        return np.array(
            [(mask >> (word * _WORD_BITS)) & word_mask for word in range(self.word_count)],
            dtype=np.uint64,
        )

    @property
    def value_size(self) -> int:
        return self._value_size

    def get_tree_count(self) -> int:
        return self._tree_count

    def _exit_leaves(self, X: np.ndarray) -> np.ndarray:
        """Exit leaf number of every (row, tree), shape (n_rows, n_trees)."""
        n_rows = X.shape[0]
        n_trees = self.leaf_values.shape[0]
        bitvectors = np.full((n_rows, n_trees, self.word_count), np.iinfo(np.uint64).max,
                             dtype=np.uint64)
        for feature, (thresholds, tree_indices, masks) in self.features.items():
            column = X[:, feature]
            for threshold, tree_index, mask in zip(thresholds, tree_indices, masks):
                false_rows = column > threshold
                if not np.any(false_rows):
                    # thresholds are ascending, later conditions hold for every row
                    break
                bitvectors[false_rows, tree_index] &= mask

        nonzero = bitvectors != 0
        word = np.argmax(nonzero, axis=2)
        chosen = np.take_along_axis(bitvectors, word[..., None], axis=2)[..., 0]
        lowest = chosen & (~chosen + np.uint64(1))
        bit = np.log2(lowest.astype(np.float64)).astype(np.int64)
        return word * _WORD_BITS + bit

    def _predict_raw_dense(self, X: np.ndarray) -> np.ndarray:
        raw = np.zeros((X.shape[0], self.value_size))
        if self.leaf_values.shape[0] == 0:
            return raw
        exits = self._exit_leaves(X)
        for tree_index in range(self.leaf_values.shape[0]):
            offset = self.tree_outputs[tree_index]
            raw[:, offset:offset + self.prediction_size] += (
                self.learning_rate * self.leaf_values[tree_index, exits[:, tree_index]]
            )
        return raw
