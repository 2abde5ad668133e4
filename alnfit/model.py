"""Flattened decision-tree export of an ALN and its batched inference."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import torch

from .core.tree import ALNTree, LeafNode, combine

FORMAT_NAME = "alnfit.dtree"
FORMAT_VERSION = 1

NODE_LEAF = 0
NODE_MIN = 1
NODE_MAX = 2
_KIND_BY_OPERATOR = {"min": NODE_MIN, "max": NODE_MAX}
_OPERATOR_BY_KIND = {NODE_MIN: "min", NODE_MAX: "max"}


class DepthExceededError(ValueError):
    """Raised when a tree is deeper than the export depth bound."""

    def __init__(self, depth: int, max_depth: int) -> None:
        super().__init__(f"Tree depth {depth} exceeds max_depth={max_depth}")
        self.depth = depth
        self.max_depth = max_depth


@dataclass
class FlattenedTree:
    """Preorder, self-contained form of an ALN tree.

    Node ``0`` is the root. ``child_offsets``/``children`` store the child
    lists in CSR layout. Each leaf owns one row of ``coefficients`` (the
    input weights followed by ``-1`` for the output) and one ``biases``
    entry, so that a leaf value is ``bias + weights . x``.
    ``source_ids`` maps coefficient rows back to the node ids of the tree
    the export came from; it is not serialised.
    """

    dimension: int
    kinds: np.ndarray
    child_offsets: np.ndarray
    children: np.ndarray
    leaf_slots: np.ndarray
    coefficients: np.ndarray
    biases: np.ndarray
    smoothing: float = 0.0
    depth: int = 0
    source_ids: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    _compiled: Dict[str, Dict[str, torch.Tensor]] = field(default_factory=dict, init=False, repr=False)

    @property
    def n_nodes(self) -> int:
        return int(self.kinds.shape[0])

    @property
    def n_leaves(self) -> int:
        return int(self.biases.shape[0])

    @property
    def weights(self) -> np.ndarray:
        return self.coefficients[:, :-1]

    def node_children(self, node: int) -> np.ndarray:
        return self.children[self.child_offsets[node] : self.child_offsets[node + 1]]

    def _inputs(self, X: np.ndarray) -> np.ndarray:
        X_np = np.asarray(X, dtype=np.float64)
        n_inputs = self.dimension - 1
        if X_np.ndim != 2 or X_np.shape[1] not in (n_inputs, self.dimension):
            raise ValueError(f"Expected {n_inputs} input columns, got shape {X_np.shape}")
        return np.ascontiguousarray(X_np[:, :n_inputs])

    def evaluate(self, x: np.ndarray) -> Tuple[float, int]:
        """Value at a single point and the coefficient row of the active leaf."""
        x_np = np.asarray(x, dtype=np.float64)
        if x_np.ndim != 1 or x_np.shape[0] not in (self.dimension - 1, self.dimension):
            raise ValueError(f"Expected a vector of length {self.dimension - 1}")
        return self._evaluate(0, x_np[: self.dimension - 1])

    def _evaluate(self, node: int, x: np.ndarray) -> Tuple[float, int]:
        slot = int(self.leaf_slots[node])
        if slot >= 0:
            return float(self.biases[slot]) + float(np.dot(self.coefficients[slot, :-1], x)), slot
        operator = _OPERATOR_BY_KIND[int(self.kinds[node])]
        kids = self.node_children(node)
        value, active = self._evaluate(int(kids[0]), x)
        for kid in kids[1:]:
            other, other_active = self._evaluate(int(kid), x)
            value, take = combine(operator, value, other, self.smoothing)
            if take:
                active = other_active
        return value, active

    def _ensure_compiled(self, device: str) -> Dict[str, torch.Tensor]:
        compiled = self._compiled.get(device)
        if compiled is None:
            target = torch.device(device)
            compiled = {
                "weights": torch.from_numpy(np.ascontiguousarray(self.weights)).to(target),
                "biases": torch.from_numpy(np.ascontiguousarray(self.biases)).to(target),
            }
            self._compiled[device] = compiled
        return compiled

    def predict(
        self,
        X: np.ndarray,
        *,
        return_leaves: bool = False,
        device: str = "cpu",
    ) -> np.ndarray | Tuple[np.ndarray, np.ndarray]:
        """Evaluate all rows of ``X`` at once.

        With ``return_leaves`` the coefficient row of the active leaf of
        every sample is returned as well.
        """
        X_in = self._inputs(X)
        n_rows = X_in.shape[0]
        if n_rows == 0:
            empty = np.empty(0, dtype=np.float64)
            return (empty, np.empty(0, dtype=np.int64)) if return_leaves else empty

        compiled = self._ensure_compiled(device)
        with torch.no_grad():
            x_t = torch.from_numpy(X_in).to(compiled["weights"].device)
            piece_values = x_t @ compiled["weights"].T + compiled["biases"]
            values: List[Optional[torch.Tensor]] = [None] * self.n_nodes
            active: List[Optional[torch.Tensor]] = [None] * self.n_nodes
            # reversed preorder visits children before their parent
            for node in range(self.n_nodes - 1, -1, -1):
                slot = int(self.leaf_slots[node])
                if slot >= 0:
                    values[node] = piece_values[:, slot]
                    active[node] = torch.full((n_rows,), slot, dtype=torch.int64, device=x_t.device)
                    continue
                kind = int(self.kinds[node])
                kids = [int(k) for k in self.node_children(node)]
                acc = values[kids[0]]
                acc_active = active[kids[0]]
                for kid in kids[1:]:
                    other = values[kid]
                    take = other > acc if kind == NODE_MAX else other < acc
                    acc_active = torch.where(take, active[kid], acc_active)
                    acc = _combine_tensor(kind, acc, other, self.smoothing)
                for kid in kids:
                    values[kid] = None
                    active[kid] = None
                values[node] = acc
                active[node] = acc_active
            out = values[0].cpu().numpy()
            leaves = active[0].cpu().numpy()
        if return_leaves:
            return out, leaves
        return out

    def to_dict(self) -> Dict[str, object]:
        """Serialise the tree as a versioned list of typed node records."""
        nodes: List[Dict[str, object]] = []
        for node in range(self.n_nodes):
            slot = int(self.leaf_slots[node])
            if slot >= 0:
                nodes.append(
                    {
                        "type": "leaf",
                        "bias": float(self.biases[slot]),
                        "weights": self.coefficients[slot, :-1].tolist(),
                    }
                )
            else:
                nodes.append(
                    {
                        "type": _OPERATOR_BY_KIND[int(self.kinds[node])],
                        "children": [int(kid) for kid in self.node_children(node)],
                    }
                )
        return {
            "format": FORMAT_NAME,
            "version": FORMAT_VERSION,
            "dimension": self.dimension,
            "smoothing": self.smoothing,
            "depth": self.depth,
            "nodes": nodes,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "FlattenedTree":
        """Create a tree from ``payload`` produced by :meth:`to_dict`."""
        if payload.get("format") != FORMAT_NAME:
            raise ValueError(f"Not an {FORMAT_NAME} payload")
        version = int(payload["version"])  # type: ignore[arg-type]
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported {FORMAT_NAME} version: {version}")
        dimension = int(payload["dimension"])  # type: ignore[arg-type]

        kinds: List[int] = []
        leaf_slots: List[int] = []
        child_lists: List[List[int]] = []
        coefficients: List[List[float]] = []
        biases: List[float] = []
        for record in payload["nodes"]:  # type: ignore[union-attr]
            node_type = record["type"]
            if node_type == "leaf":
                weights = [float(w) for w in record["weights"]]
                if len(weights) != dimension - 1:
                    raise ValueError(f"Leaf record has {len(weights)} weights, expected {dimension - 1}")
                kinds.append(NODE_LEAF)
                leaf_slots.append(len(biases))
                child_lists.append([])
                coefficients.append(weights + [-1.0])
                biases.append(float(record["bias"]))
            elif node_type in _KIND_BY_OPERATOR:
                kids = [int(kid) for kid in record["children"]]
                if not kids:
                    raise ValueError(f"Node {len(kinds)} is a {node_type} record without children")
                kinds.append(_KIND_BY_OPERATOR[node_type])
                leaf_slots.append(-1)
                child_lists.append(kids)
            else:
                raise ValueError(f"Unknown node record type: {node_type}")
        if not biases:
            raise ValueError("A tree needs at least one leaf")
        _check_preorder(child_lists)

        child_offsets = np.zeros(len(child_lists) + 1, dtype=np.int32)
        child_offsets[1:] = np.cumsum([len(kids) for kids in child_lists])
        return cls(
            dimension=dimension,
            kinds=np.asarray(kinds, dtype=np.int8),
            child_offsets=child_offsets,
            children=np.asarray([kid for kids in child_lists for kid in kids], dtype=np.int32),
            leaf_slots=np.asarray(leaf_slots, dtype=np.int32),
            coefficients=np.asarray(coefficients, dtype=np.float64),
            biases=np.asarray(biases, dtype=np.float64),
            smoothing=float(payload.get("smoothing", 0.0)),  # type: ignore[arg-type]
            depth=int(payload.get("depth", 0)),  # type: ignore[arg-type]
        )


def _check_preorder(child_lists: List[List[int]]) -> None:
    """Require child lists that describe one tree laid out in preorder."""
    n_nodes = len(child_lists)
    for node, kids in enumerate(child_lists):
        for kid in kids:
            if not node < kid < n_nodes:
                raise ValueError(f"Node {node} has child index {kid} outside ({node}, {n_nodes})")
    expected = 0
    stack = [0]
    while stack:
        node = stack.pop()
        if node != expected:
            raise ValueError(f"Node records are not in preorder: found {node} where {expected} was expected")
        expected += 1
        stack.extend(reversed(child_lists[node]))
    if expected != n_nodes:
        raise ValueError(f"{n_nodes - expected} node records are unreachable from the root")


def _combine_tensor(kind: int, a: torch.Tensor, b: torch.Tensor, smoothing: float) -> torch.Tensor:
    if kind == NODE_MAX:
        value = torch.maximum(a, b)
        sign = 1.0
    else:
        value = torch.minimum(a, b)
        sign = -1.0
    if smoothing > 0.0:
        gap = torch.abs(a - b)
        fillet = torch.clamp(smoothing - gap, min=0.0) ** 2 / (4.0 * smoothing)
        value = value + sign * fillet
    return value


def export_tree(tree: ALNTree, max_depth: Optional[int] = None) -> FlattenedTree:
    """Flatten ``tree`` into preorder arrays.

    Raises :class:`DepthExceededError` when the tree is deeper than
    ``max_depth``; the tree itself is left untouched.
    """

    depth = tree.depth
    if max_depth is not None and depth > max_depth:
        raise DepthExceededError(depth, max_depth)

    kinds: List[int] = []
    leaf_slots: List[int] = []
    child_lists: List[List[int]] = []
    coefficients: List[np.ndarray] = []
    biases: List[float] = []
    source_ids: List[int] = []

    def visit(node_id: int) -> int:
        position = len(kinds)
        node = tree.nodes[node_id]
        child_lists.append([])
        if isinstance(node, LeafNode):
            kinds.append(NODE_LEAF)
            leaf_slots.append(len(biases))
            biases.append(node.bias)
            coefficients.append(np.append(node.weights, -1.0))
            source_ids.append(node_id)
            return position
        kinds.append(_KIND_BY_OPERATOR[node.operator])
        leaf_slots.append(-1)
        child_lists[position] = [visit(child) for child in node.children]
        return position

    visit(tree.root)
    child_offsets = np.zeros(len(child_lists) + 1, dtype=np.int32)
    child_offsets[1:] = np.cumsum([len(kids) for kids in child_lists])
    return FlattenedTree(
        dimension=tree.dimension,
        kinds=np.asarray(kinds, dtype=np.int8),
        child_offsets=child_offsets,
        children=np.asarray([kid for kids in child_lists for kid in kids], dtype=np.int32),
        leaf_slots=np.asarray(leaf_slots, dtype=np.int32),
        coefficients=np.vstack(coefficients),
        biases=np.asarray(biases, dtype=np.float64),
        smoothing=tree.smoothing,
        depth=depth,
        source_ids=np.asarray(source_ids, dtype=np.int64),
    )
