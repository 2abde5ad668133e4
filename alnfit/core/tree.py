"""Arena-backed ALN tree: linear pieces combined by MIN/MAX nodes."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, List, Literal, Optional, Tuple, Union

import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from ..data import LinearStart
    from ..model import FlattenedTree

Operator = Literal["min", "max"]
OPERATORS: Tuple[str, ...] = ("min", "max")


@dataclass(frozen=True)
class AxisConstraints:
    """Per-input-axis tolerances and bounds shared by every piece of a tree."""

    epsilon: np.ndarray
    domain_min: np.ndarray
    domain_max: np.ndarray
    weight_min: np.ndarray
    weight_max: np.ndarray
    output_scale: float = 1.0

    def __post_init__(self) -> None:
        arrays = {}
        for name in ("epsilon", "domain_min", "domain_max", "weight_min", "weight_max"):
            arr = np.array(getattr(self, name), dtype=np.float64, ndmin=1)
            arr.setflags(write=False)
            arrays[name] = arr
        n_inputs = arrays["epsilon"].shape[0]
        if any(arr.shape != (n_inputs,) for arr in arrays.values()):
            raise ValueError("All axis constraint arrays must have one entry per input")
        if not np.all(np.isfinite(arrays["epsilon"])) or np.any(arrays["epsilon"] <= 0):
            raise ValueError("epsilon must be positive and finite on every axis")
        if np.any(arrays["domain_min"] > arrays["domain_max"]):
            raise ValueError("domain_min must not exceed domain_max")
        if np.any(arrays["weight_min"] > arrays["weight_max"]):
            raise ValueError("weight_min must not exceed weight_max")
        if not self.output_scale > 0:
            raise ValueError("output_scale must be positive")
        for name, arr in arrays.items():
            object.__setattr__(self, name, arr)
        object.__setattr__(self, "output_scale", float(self.output_scale))

    @classmethod
    def unbounded(cls, n_inputs: int, *, epsilon: float = 1.0, output_scale: float = 1.0) -> "AxisConstraints":
        return cls(
            epsilon=np.full(n_inputs, float(epsilon)),
            domain_min=np.full(n_inputs, -np.inf),
            domain_max=np.full(n_inputs, np.inf),
            weight_min=np.full(n_inputs, -np.inf),
            weight_max=np.full(n_inputs, np.inf),
            output_scale=output_scale,
        )

    @property
    def n_inputs(self) -> int:
        return int(self.epsilon.shape[0])

    @property
    def domain_span(self) -> np.ndarray:
        """Finite width of every axis, falling back to the tolerance."""
        span = self.domain_max - self.domain_min
        return np.where(np.isfinite(span) & (span > 0), span, self.epsilon)

    def relaxed(self) -> "AxisConstraints":
        return replace(
            self,
            weight_min=np.full(self.n_inputs, -np.inf),
            weight_max=np.full(self.n_inputs, np.inf),
        )

    def clip_weights(self, weights: np.ndarray) -> np.ndarray:
        return np.clip(weights, self.weight_min, self.weight_max)

    def clip_inputs(self, x: np.ndarray) -> np.ndarray:
        return np.clip(x, self.domain_min, self.domain_max)


@dataclass(slots=True)
class LeafNode:
    """Affine piece ``y = output_centroid + weights . (x - centroid)``.

    ``spread`` holds the running per-axis variance of the samples the piece
    has been trained on. The remaining fields are accumulators reset by the
    trainer (per epoch) and the split controller (per growth pass).
    """

    weights: np.ndarray
    centroid: np.ndarray
    output_centroid: float
    spread: np.ndarray
    parent: int = -1
    train_sse: float = 0.0
    train_hits: int = 0
    variance_sum: float = 0.0
    variance_hits: int = 0
    epoch_change: float = 0.0
    curvature: float = 0.0

    @property
    def bias(self) -> float:
        return float(self.output_centroid - np.dot(self.weights, self.centroid))

    def value(self, x: np.ndarray) -> float:
        return self.bias + float(np.dot(self.weights, x))

    def spawn(self, parent: int) -> "LeafNode":
        """Copy of the piece with fresh accumulators."""
        return LeafNode(
            weights=self.weights.copy(),
            centroid=self.centroid.copy(),
            output_centroid=self.output_centroid,
            spread=self.spread.copy(),
            parent=parent,
        )

    def reset_epoch(self) -> None:
        self.train_sse = 0.0
        self.train_hits = 0
        self.epoch_change = 0.0
        self.curvature = 0.0

    def reset_variance(self) -> None:
        self.variance_sum = 0.0
        self.variance_hits = 0


@dataclass(slots=True)
class MinMaxNode:
    """Internal node taking the MIN or MAX over its children."""

    operator: Operator
    children: List[int]
    parent: int = -1


Node = Union[LeafNode, MinMaxNode]


def combine(operator: str, a: float, b: float, smoothing: float = 0.0) -> Tuple[float, bool]:
    """Fold ``b`` into ``a`` and report whether ``b`` became the active side.

    Ties keep ``a``. With ``smoothing > 0`` the corner is replaced by a
    quadratic fillet over ``|a - b| < smoothing``.
    """

    if operator == "max":
        take = b > a
        value = b if take else a
        sign = 1.0
    else:
        take = b < a
        value = b if take else a
        sign = -1.0
    if smoothing > 0.0:
        gap = abs(a - b)
        if gap < smoothing:
            value += sign * (smoothing - gap) ** 2 / (4.0 * smoothing)
    return value, take


class ALNTree:
    """Tree of affine pieces stored in a flat arena of nodes.

    Node ids index :attr:`nodes`. Released slots hold ``None`` and are reused
    by later splits, so a node id is only meaningful while the node is part
    of the tree.
    """

    def __init__(self, dimension: int, constraints: AxisConstraints, *, smoothing: float = 0.0) -> None:
        if dimension < 2:
            raise ValueError("dimension must be at least 2 (one input and the output)")
        if constraints.n_inputs != dimension - 1:
            raise ValueError(
                f"constraints describe {constraints.n_inputs} inputs but dimension {dimension} needs {dimension - 1}"
            )
        if smoothing < 0:
            raise ValueError("smoothing must be non-negative")
        self.dimension = int(dimension)
        self.constraints = constraints
        self.smoothing = float(smoothing)
        self.nodes: List[Optional[Node]] = []
        self._free: List[int] = []
        self.root = self._add(self._initial_leaf())

    @classmethod
    def from_start(
        cls,
        constraints: AxisConstraints,
        start: "LinearStart",
        *,
        smoothing: float = 0.0,
    ) -> "ALNTree":
        """Single-piece tree seeded with a least-squares plane."""
        tree = cls(constraints.n_inputs + 1, constraints, smoothing=smoothing)
        tree.seed_root(start.weights, start.centroid, start.output_centroid, start.spread)
        return tree

    def _initial_leaf(self) -> LeafNode:
        c = self.constraints
        finite = np.isfinite(c.domain_min) & np.isfinite(c.domain_max)
        with np.errstate(invalid="ignore"):
            midpoint = 0.5 * (c.domain_min + c.domain_max)
        centroid = np.where(finite, midpoint, 0.0)
        # variance of a uniform distribution over the domain
        spread = np.where(finite, (c.domain_span / np.sqrt(12.0)) ** 2, c.epsilon**2)
        return LeafNode(
            weights=c.clip_weights(np.zeros(c.n_inputs)),
            centroid=centroid,
            output_centroid=0.0,
            spread=spread,
        )

    def _add(self, node: Node) -> int:
        if self._free:
            node_id = self._free.pop()
            self.nodes[node_id] = node
            return node_id
        self.nodes.append(node)
        return len(self.nodes) - 1

    def _release(self, node_id: int) -> None:
        self.nodes[node_id] = None
        self._free.append(node_id)

    def leaf(self, node_id: int) -> LeafNode:
        node = self.nodes[node_id]
        if not isinstance(node, LeafNode):
            raise KeyError(f"Node {node_id} is not a leaf")
        return node

    def seed_root(
        self,
        weights: np.ndarray,
        centroid: np.ndarray,
        output_centroid: float,
        spread: Optional[np.ndarray] = None,
    ) -> None:
        """Overwrite the single piece of an unsplit tree."""
        if not isinstance(self.nodes[self.root], LeafNode):
            raise RuntimeError("Only a single-piece tree can be seeded")
        leaf = self.leaf(self.root)
        c = self.constraints
        leaf.weights = c.clip_weights(np.asarray(weights, dtype=np.float64).copy())
        leaf.centroid = c.clip_inputs(np.asarray(centroid, dtype=np.float64).copy())
        leaf.output_centroid = float(output_centroid)
        if spread is not None:
            leaf.spread = np.maximum(np.asarray(spread, dtype=np.float64), self.min_spread)

    @property
    def min_spread(self) -> np.ndarray:
        return (0.5 * self.constraints.epsilon) ** 2

    def _inputs(self, x: np.ndarray) -> np.ndarray:
        x_np = np.asarray(x, dtype=np.float64)
        n_inputs = self.dimension - 1
        if x_np.ndim != 1 or x_np.shape[0] not in (n_inputs, self.dimension):
            raise ValueError(f"Expected a vector of length {n_inputs} or {self.dimension}, got shape {x_np.shape}")
        return x_np[:n_inputs]

    def evaluate(self, x: np.ndarray) -> Tuple[float, int]:
        """Return the tree's value at ``x`` and the id of the active piece.

        ``x`` may carry the output as a trailing element; it is ignored.
        """
        return self._evaluate(self.root, self._inputs(x))

    def _evaluate(self, node_id: int, x: np.ndarray) -> Tuple[float, int]:
        node = self.nodes[node_id]
        if isinstance(node, LeafNode):
            return node.value(x), node_id
        children = node.children
        value, active = self._evaluate(children[0], x)
        for child in children[1:]:
            other, other_active = self._evaluate(child, x)
            value, take = combine(node.operator, value, other, self.smoothing)
            if take:
                active = other_active
        return value, active

    def _walk(self) -> List[Tuple[int, int]]:
        order: List[Tuple[int, int]] = []
        stack = [(self.root, 0)]
        while stack:
            node_id, depth = stack.pop()
            order.append((node_id, depth))
            node = self.nodes[node_id]
            if isinstance(node, MinMaxNode):
                stack.extend((child, depth + 1) for child in reversed(node.children))
        return order

    def leaves(self) -> List[int]:
        """Ids of the reachable pieces, left to right."""
        return [node_id for node_id, _ in self._walk() if isinstance(self.nodes[node_id], LeafNode)]

    @property
    def leaf_count(self) -> int:
        return len(self.leaves())

    @property
    def node_count(self) -> int:
        return len(self._walk())

    @property
    def depth(self) -> int:
        return max(depth for _, depth in self._walk())

    def split_leaf(self, leaf_id: int, operator: str, offsets: np.ndarray) -> int:
        """Replace a piece by a MIN/MAX node over two perturbed copies.

        The children receive ``weights + offsets`` and ``weights - offsets``.
        Returns the id of the new internal node.
        """
        if operator not in OPERATORS:
            raise ValueError(f"Unsupported operator: {operator}")
        leaf = self.leaf(leaf_id)
        offsets = np.asarray(offsets, dtype=np.float64)
        if offsets.shape != leaf.weights.shape:
            raise ValueError("offsets must have one entry per input")

        parent_id = leaf.parent
        combo_id = self._add(MinMaxNode(operator=operator, children=[], parent=parent_id))  # type: ignore[arg-type]
        first = leaf.spawn(combo_id)
        second = leaf.spawn(combo_id)
        first.weights = self.constraints.clip_weights(first.weights + offsets)
        second.weights = self.constraints.clip_weights(second.weights - offsets)
        combo = self.nodes[combo_id]
        assert isinstance(combo, MinMaxNode)
        combo.children = [self._add(first), self._add(second)]

        if parent_id < 0:
            self.root = combo_id
        else:
            parent = self.nodes[parent_id]
            assert isinstance(parent, MinMaxNode)
            parent.children[parent.children.index(leaf_id)] = combo_id
        self._release(leaf_id)
        return combo_id

    def flatten(self, max_depth: Optional[int] = None) -> "FlattenedTree":
        from ..model import export_tree

        return export_tree(self, max_depth=max_depth)

    def predict(
        self,
        X: np.ndarray,
        *,
        return_leaves: bool = False,
        device: str = "cpu",
    ) -> np.ndarray | Tuple[np.ndarray, np.ndarray]:
        """Vectorised evaluation of many rows through the flattened tree.

        With ``return_leaves`` the id of the active piece of every row is
        returned as well, in the same id space as :meth:`evaluate`.
        """
        flat = self.flatten()
        if not return_leaves:
            return flat.predict(X, device=device)
        values, slots = flat.predict(X, return_leaves=True, device=device)
        return values, flat.source_ids[slots]
