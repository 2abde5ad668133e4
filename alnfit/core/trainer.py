"""Sample-by-sample adaptation of the active pieces of an ALN tree."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

import numpy as np

from ..config import ALNConfig, PhaseSettings
from .tree import AxisConstraints, ALNTree

ProgressCallback = Callable[[str, int, dict], None]


@dataclass
class TrainingContext:
    """Per-tree state handed to sources, samplers and progress hooks."""

    config: ALNConfig
    rng: np.random.Generator
    phase: PhaseSettings
    label: str = "aln"
    callback: Optional[ProgressCallback] = field(default=None, repr=False)

    def notify(self, iteration: int, metrics: dict) -> None:
        if self.callback is not None:
            self.callback(self.label, iteration, metrics)


class TableSource:
    """Serves the rows of a table, freshly shuffled every epoch."""

    def __init__(self, rows: np.ndarray) -> None:
        rows_np = np.asarray(rows, dtype=np.float64)
        if rows_np.ndim != 2 or rows_np.shape[0] == 0:
            raise ValueError("TableSource needs a non-empty 2D table")
        self.rows = rows_np

    @property
    def epoch_size(self) -> int:
        return int(self.rows.shape[0])

    def epoch(self, context: TrainingContext) -> Iterator[np.ndarray]:
        for idx in context.rng.permutation(self.epoch_size):
            yield self.rows[idx]


class SamplerSource:
    """Serves ``epoch_size`` synthetic rows drawn by ``sampler`` per epoch."""

    def __init__(self, sampler: Callable[[TrainingContext], np.ndarray], epoch_size: int) -> None:
        if epoch_size <= 0:
            raise ValueError("epoch_size must be positive")
        self.sampler = sampler
        self._epoch_size = int(epoch_size)

    @property
    def epoch_size(self) -> int:
        return self._epoch_size

    def epoch(self, context: TrainingContext) -> Iterator[np.ndarray]:
        for _ in range(self._epoch_size):
            yield np.asarray(self.sampler(context), dtype=np.float64)


RowSource = TableSource | SamplerSource


@dataclass
class TrainReport:
    converged: bool
    rmse: float
    epochs: int
    changed_leaves: int

    def __bool__(self) -> bool:
        return self.converged


def jitter_inputs(x: np.ndarray, constraints: AxisConstraints, rng: np.random.Generator) -> np.ndarray:
    """Move ``x`` by a triangular offset of at most one tolerance per axis."""
    offset = (rng.random(x.shape[0]) - rng.random(x.shape[0])) * constraints.epsilon
    return constraints.clip_inputs(x + offset)


def adapt(tree: ALNTree, row: np.ndarray, learning_rate: float) -> float:
    """Apply one sample to its active piece and return the squared residual.

    Normalised LMS in coordinates centred on the piece centroid and scaled
    by its spread: the fitted value at the sample moves by
    ``learning_rate * error`` unless a weight bound is hit. The centroid
    then drifts towards the sample without changing the piece.
    """

    x = row[:-1]
    value, leaf_id = tree.evaluate(x)
    leaf = tree.leaf(leaf_id)
    constraints = tree.constraints
    error = float(row[-1]) - value

    leaf.train_sse += error * error
    leaf.train_hits += 1

    dx = x - leaf.centroid
    scale = np.sqrt(leaf.spread)
    z = dx / scale
    z_sq = float(np.dot(z, z))
    step = learning_rate * error / (1.0 + z_sq)
    weights = constraints.clip_weights(leaf.weights + step * z / scale)

    leaf.epoch_change += abs(step) + float(np.dot(np.abs(weights - leaf.weights), constraints.epsilon))
    # positive when residuals grow away from the centroid
    leaf.curvature += error * (z_sq - z.shape[0])

    leaf.output_centroid += step
    leaf.weights = weights
    centroid = constraints.clip_inputs(leaf.centroid + learning_rate * dx)
    leaf.output_centroid += float(np.dot(weights, centroid - leaf.centroid))
    leaf.centroid = centroid
    leaf.spread = np.maximum(leaf.spread + learning_rate * (dx * dx - leaf.spread), tree.min_spread)
    return error * error


def train(
    tree: ALNTree,
    source: RowSource,
    context: TrainingContext,
    *,
    learning_rate: float,
    max_epochs: int,
    min_rmse: float = 0.0,
    jitter: bool = False,
) -> TrainReport:
    """Run up to ``max_epochs`` passes of :func:`adapt` over ``source``.

    Training stops once no piece changed materially during an epoch or the
    epoch RMSE drops below ``min_rmse``. The per-piece ``train_sse`` and
    ``train_hits`` of the last epoch are left in place for the split
    controller.
    """

    if not learning_rate > 0:
        raise ValueError("learning_rate must be positive")
    if max_epochs < 1:
        raise ValueError("max_epochs must be at least 1")

    tolerance = context.config.convergence_tolerance * tree.constraints.output_scale
    rmse = float("inf")
    changed = 0
    epochs = 0
    converged = False
    jitter_rows = jitter and isinstance(source, TableSource)
    for _ in range(max_epochs):
        leaf_ids = tree.leaves()
        for leaf_id in leaf_ids:
            tree.leaf(leaf_id).reset_epoch()

        sse = 0.0
        count = 0
        for row in source.epoch(context):
            if row.shape != (tree.dimension,) or not np.all(np.isfinite(row)):
                raise ValueError(f"Malformed training row of shape {row.shape}; expected ({tree.dimension},) finite values")
            if jitter_rows:
                row = np.append(jitter_inputs(row[:-1], tree.constraints, context.rng), row[-1])
            sse += adapt(tree, row, learning_rate)
            count += 1
        epochs += 1
        rmse = float(np.sqrt(sse / count))

        changed = 0
        for leaf_id in leaf_ids:
            leaf = tree.leaf(leaf_id)
            if leaf.train_hits and leaf.epoch_change / leaf.train_hits > tolerance:
                changed += 1
        if rmse < min_rmse or changed == 0:
            converged = True
            break
    return TrainReport(converged=converged, rmse=rmse, epochs=epochs, changed_leaves=changed)
