"""Data preparation utilities for ALN fitting."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
import torch

from .config import ALNConfig
from .core.tree import AxisConstraints

PARTITION_ROLES = ("train", "variance", "validate", "test", "half_a", "half_b")


def ensure_numpy(array: np.ndarray | torch.Tensor | pd.DataFrame | pd.Series | Sequence[float]) -> np.ndarray:
    """Convert ``array`` to an ``np.ndarray`` without copying when possible."""

    if isinstance(array, np.ndarray):
        return np.asarray(array)
    if isinstance(array, (pd.DataFrame, pd.Series)):
        return array.to_numpy()
    if isinstance(array, torch.Tensor):  # pragma: no cover - convenience path
        return array.detach().cpu().numpy()
    return np.asarray(array)


def build_rows(X: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Stack inputs and target into ``float64`` rows with the target last."""

    X_np = ensure_numpy(X).astype(np.float64, copy=False)
    y_np = ensure_numpy(y).astype(np.float64, copy=False)
    if X_np.ndim == 1:
        X_np = X_np.reshape(-1, 1)
    if X_np.ndim != 2:
        raise ValueError("X must be 2D")
    if y_np.ndim != 1:
        raise ValueError("y must be 1-D")
    if X_np.shape[0] != y_np.shape[0]:
        raise ValueError("X and y row mismatch")
    rows = np.column_stack([X_np, y_np])
    if not np.all(np.isfinite(rows)):
        raise ValueError("X and y must be finite")
    return np.ascontiguousarray(rows)


@dataclass(frozen=True)
class Partition:
    """Read-only table of rows, each ``dimension`` long with the target last."""

    role: str
    rows: np.ndarray

    def __post_init__(self) -> None:
        if self.role not in PARTITION_ROLES:
            raise ValueError(f"Unknown partition role: {self.role}")
        rows = np.asarray(self.rows, dtype=np.float64)
        if rows.ndim != 2 or rows.shape[1] < 2:
            raise ValueError("Partition rows must be 2D with at least one input and one output column")
        rows = np.ascontiguousarray(rows)
        rows.setflags(write=False)
        object.__setattr__(self, "rows", rows)

    @classmethod
    def from_xy(cls, role: str, X: np.ndarray, y: np.ndarray) -> "Partition":
        return cls(role, build_rows(X, y))

    @property
    def n_rows(self) -> int:
        return int(self.rows.shape[0])

    @property
    def dimension(self) -> int:
        return int(self.rows.shape[1])

    @property
    def inputs(self) -> np.ndarray:
        return self.rows[:, :-1]

    @property
    def targets(self) -> np.ndarray:
        return self.rows[:, -1]

    def take(self, indices: np.ndarray, role: str) -> "Partition":
        return Partition(role, self.rows[np.asarray(indices, dtype=np.int64)])


@dataclass(frozen=True)
class NoiseTable:
    """Noise-variance samples aligned row for row with a Train partition."""

    inputs: np.ndarray
    values: np.ndarray

    def __post_init__(self) -> None:
        inputs = np.ascontiguousarray(np.asarray(self.inputs, dtype=np.float64))
        values = np.ascontiguousarray(np.asarray(self.values, dtype=np.float64))
        if inputs.ndim != 2 or values.ndim != 1:
            raise ValueError("NoiseTable needs 2D inputs and 1-D values")
        if inputs.shape[0] != values.shape[0]:
            raise ValueError("NoiseTable inputs and values must align")
        if not np.all(np.isfinite(values)) or np.any(values < 0):
            raise ValueError("Noise-variance samples must be finite and non-negative")
        inputs.setflags(write=False)
        values.setflags(write=False)
        object.__setattr__(self, "inputs", inputs)
        object.__setattr__(self, "values", values)

    @classmethod
    def constant(cls, partition: Partition, variance: float) -> "NoiseTable":
        return cls(partition.inputs, np.full(partition.n_rows, float(variance)))

    @classmethod
    def from_values(cls, partition: Partition, values: np.ndarray | float) -> "NoiseTable":
        values_np = ensure_numpy(values).astype(np.float64, copy=False)
        if values_np.ndim == 0:
            return cls.constant(partition, float(values_np))
        return cls(partition.inputs, values_np)

    @property
    def n_rows(self) -> int:
        return int(self.values.shape[0])

    @property
    def mean(self) -> float:
        return float(self.values.mean()) if self.values.size else 0.0

    def scaled(self, divisor: float) -> "NoiseTable":
        """Variance of an average of ``divisor`` independent estimators."""
        if divisor <= 0:
            raise ValueError("divisor must be positive")
        return NoiseTable(self.inputs, self.values / float(divisor))


@dataclass(frozen=True)
class AxisStats:
    """Column statistics over all ``dimension`` variables of a partition."""

    minimum: np.ndarray
    maximum: np.ndarray
    mean: np.ndarray
    stdev: np.ndarray
    n_rows: int

    @property
    def dimension(self) -> int:
        return int(self.minimum.shape[0])

    @property
    def span(self) -> np.ndarray:
        return self.maximum - self.minimum


def compute_axis_stats(rows: np.ndarray) -> AxisStats:
    rows_np = np.asarray(rows, dtype=np.float64)
    if rows_np.ndim != 2 or rows_np.shape[0] == 0:
        raise ValueError("rows must be a non-empty 2D array")
    n_rows = int(rows_np.shape[0])
    stdev = rows_np.std(axis=0, ddof=1) if n_rows > 1 else np.zeros(rows_np.shape[1])
    return AxisStats(
        minimum=rows_np.min(axis=0),
        maximum=rows_np.max(axis=0),
        mean=rows_np.mean(axis=0),
        stdev=stdev,
        n_rows=n_rows,
    )


def estimate_epsilon(stats: AxisStats) -> np.ndarray:
    """Side of the box each sample occupies along every input axis."""

    n_inputs = stats.dimension - 1
    density = float(stats.n_rows) ** (-1.0 / n_inputs)
    return stats.span[:n_inputs] * density


def prepare_constraints(stats: AxisStats, config: ALNConfig, *, relaxed: bool = False) -> AxisConstraints:
    """Derive tolerances, domain bounds and weight bounds for every input axis.

    Parameters
    ----------
    stats:
        Statistics of the training rows (inputs and output).
    config:
        Supplies optional tolerance overrides and a-priori weight bounds.
    relaxed:
        Drop the weight bounds, as needed to overtrain the noise trees.
    """

    n_inputs = stats.dimension - 1
    if n_inputs < 1:
        raise ValueError("At least one input variable is required")
    if config.epsilon is not None:
        epsilon = np.asarray(config.epsilon, dtype=np.float64)
        if epsilon.shape != (n_inputs,):
            raise ValueError(f"epsilon must have {n_inputs} entries")
    else:
        epsilon = estimate_epsilon(stats)
    for axis in range(n_inputs):
        if not epsilon[axis] > 0 or stats.stdev[axis] == 0:
            raise ValueError(f"Variable {axis} appears to be constant. Try removing it.")

    output_stdev = float(stats.stdev[-1])
    if output_stdev == 0:
        raise ValueError("The output variable is constant; nothing to fit.")

    margin = float(config.domain_margin) * stats.stdev[:n_inputs]
    domain_min = stats.minimum[:n_inputs] - margin
    domain_max = stats.maximum[:n_inputs] + margin

    if relaxed:
        weight_min = np.full(n_inputs, -np.inf)
        weight_max = np.full(n_inputs, np.inf)
    else:
        # output range of a uniform distribution over the likely sample spacing
        bound = np.sqrt(3.0) * output_stdev / epsilon
        weight_min = -bound
        weight_max = bound.copy()
        if config.weight_min is not None:
            weight_min = np.maximum(weight_min, np.asarray(config.weight_min, dtype=np.float64))
        if config.weight_max is not None:
            weight_max = np.minimum(weight_max, np.asarray(config.weight_max, dtype=np.float64))

    return AxisConstraints(
        epsilon=epsilon,
        domain_min=domain_min,
        domain_max=domain_max,
        weight_min=weight_min,
        weight_max=weight_max,
        output_scale=output_stdev,
    )


@dataclass(frozen=True)
class LinearStart:
    """Single affine piece fitted by least squares, used to seed every tree."""

    weights: np.ndarray
    centroid: np.ndarray
    output_centroid: float
    spread: np.ndarray
    rmse: float

    @property
    def bias(self) -> float:
        return float(self.output_centroid - np.dot(self.weights, self.centroid))


def fit_linear_start(partition: Partition) -> LinearStart:
    """Least-squares plane through the centroid of ``partition``.

    The RMSE of this fit bounds the error any grown tree should reach.
    """

    inputs = partition.inputs
    targets = partition.targets
    centroid = inputs.mean(axis=0)
    output_centroid = float(targets.mean())
    centered = inputs - centroid
    weights, *_ = np.linalg.lstsq(centered, targets - output_centroid, rcond=None)
    residual = targets - (output_centroid + centered @ weights)
    rmse = float(np.sqrt(np.mean(residual * residual)))
    return LinearStart(
        weights=np.asarray(weights, dtype=np.float64),
        centroid=centroid,
        output_centroid=output_centroid,
        spread=centered.var(axis=0),
        rmse=rmse,
    )
