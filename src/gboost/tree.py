"""
Regression trees grown by the boosting back ends.

A split node sends a row to the left child when ``row[feature] <= threshold``.
Every leaf carries a value vector: one element for single-output trees,
one element per output for multi-output trees.
"""

from typing import Iterator, List, Optional

import numpy as np

from .archive import Archive

LEAF = -1


class RegressionTreeNode:
    """Linked binary regression tree node."""

    def __init__(
        self,
        value: Optional[np.ndarray] = None,
        feature: int = LEAF,
        threshold: float = 0.0,
        left: Optional["RegressionTreeNode"] = None,
        right: Optional["RegressionTreeNode"] = None
    ):
        self.value = np.zeros(1) if value is None else np.asarray(value, dtype=np.float64)
        self.feature = feature
        self.threshold = threshold
        self.left = left
        self.right = right

    @property
    def is_leaf(self) -> bool:
        return self.feature == LEAF

    @property
    def value_size(self) -> int:
        """Width of the leaf value vectors; split nodes carry no value of their own."""
        node = self
        while not node.is_leaf:
            node = node.left
        return node.value.shape[0]

    def make_leaf(self, value: np.ndarray) -> None:
        self.feature = LEAF
        self.threshold = 0.0
        self.left = None
        self.right = None
        self.value = np.asarray(value, dtype=np.float64)

    def split(self, feature: int, threshold: float, left: "RegressionTreeNode",
              right: "RegressionTreeNode") -> None:
        self.feature = feature
        self.threshold = threshold
        self.left = left
        self.right = right

    def iter_nodes(self) -> Iterator["RegressionTreeNode"]:
        """Nodes in pre-order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            if not node.is_leaf:
                stack.append(node.right)
                stack.append(node.left)

    def node_count(self) -> int:
        return sum(1 for _ in self.iter_nodes())

    def depth(self) -> int:
        best = 0
        stack = [(self, 0)]
        while stack:
            node, level = stack.pop()
            best = max(best, level)
            if not node.is_leaf:
                stack.append((node.left, level + 1))
                stack.append((node.right, level + 1))
        return best

    def predict(self, row: np.ndarray) -> np.ndarray:
        """Leaf value vector reached by a dense feature row."""
        node = self
        while not node.is_leaf:
            node = node.left if row[node.feature] <= node.threshold else node.right
        return node.value

    def predict_matrix(self, X: np.ndarray) -> np.ndarray:
        """Leaf values for every row of a dense matrix, shape (n_rows, value_size)."""
        result = np.empty((X.shape[0], self.value_size))
        stack = [(self, np.arange(X.shape[0]))]
        while stack:
            node, rows = stack.pop()
            if len(rows) == 0:
                continue
            if node.is_leaf:
                result[rows] = node.value
                continue
            goes_left = X[rows, node.feature] <= node.threshold
            stack.append((node.left, rows[goes_left]))
            stack.append((node.right, rows[~goes_left]))
        return result

    def write(self, archive: Archive) -> None:
        """Store the subtree in pre-order."""
        for node in self.iter_nodes():
            archive.write_int(node.feature)
            if node.is_leaf:
                archive.write_double_array(node.value)
            else:
                archive.write_double(node.threshold)

    @classmethod
    def read(cls, archive: Archive) -> "RegressionTreeNode":
        """Restore a subtree stored by ``write``."""
        root = cls()
        pending = [root]
        while pending:
            node = pending.pop()
            feature = archive.read_int()
            if feature == LEAF:
                node.make_leaf(archive.read_double_array())
            else:
                left, right = cls(), cls()
                node.split(feature, archive.read_double(), left, right)
                pending.append(right)
                pending.append(left)
        return root


class CompactRegressionTree:
    """
    The same tree flattened into parallel arrays.

    Node 0 is the root; ``left[i]``/``right[i]`` are child node indices and
    ``feature[i] == LEAF`` marks a leaf whose output is ``values[i]``.
    """

    def __init__(self, feature: np.ndarray, threshold: np.ndarray, left: np.ndarray,
                 right: np.ndarray, values: np.ndarray):
        self.feature = feature
        self.threshold = threshold
        self.left = left
        self.right = right
        self.values = values

    @classmethod
    def from_node(cls, root: RegressionTreeNode) -> "CompactRegressionTree":
        nodes: List[RegressionTreeNode] = list(root.iter_nodes())
        position = {id(node): i for i, node in enumerate(nodes)}
        count = len(nodes)
        feature = np.full(count, LEAF, dtype=np.int32)
        threshold = np.zeros(count)
        left = np.full(count, -1, dtype=np.int32)
        right = np.full(count, -1, dtype=np.int32)
        values = np.zeros((count, root.value_size))
        for i, node in enumerate(nodes):
            if node.is_leaf:
                values[i] = node.value
            else:
                feature[i] = node.feature
                threshold[i] = node.threshold
                left[i] = position[id(node.left)]
                right[i] = position[id(node.right)]
        return cls(feature, threshold, left, right, values)

    @property
    def value_size(self) -> int:
        return self.values.shape[1]

    def node_count(self) -> int:
        return len(self.feature)

    def predict(self, row: np.ndarray) -> np.ndarray:
        index = 0
        while self.feature[index] != LEAF:
            if row[self.feature[index]] <= self.threshold[index]:
                index = self.left[index]
            else:
                index = self.right[index]
        return self.values[index]

    def predict_matrix(self, X: np.ndarray) -> np.ndarray:
        index = np.zeros(X.shape[0], dtype=np.int64)
        active = self.feature[index] != LEAF
        while np.any(active):
            rows = np.flatnonzero(active)
            nodes = index[rows]
            goes_left = X[rows, self.feature[nodes]] <= self.threshold[nodes]
            index[rows] = np.where(goes_left, self.left[nodes], self.right[nodes])
            active = self.feature[index] != LEAF
        return self.values[index]
