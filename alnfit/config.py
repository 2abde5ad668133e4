"""Configuration objects for ALN fitting."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Sequence

# Upper 90% points of the F distribution, indexed by approximate degrees of
# freedom: 2..10, 20, 30, 40, 60.
DEFAULT_F_TABLE: tuple[float, ...] = (
    9.00, 5.39, 4.11, 3.45, 3.05, 2.78, 2.59, 2.44, 2.32, 1.79, 1.61, 1.51, 1.40,
)


@dataclass(frozen=True, slots=True)
class PhaseSettings:
    """Learning schedule of one training phase.

    Parameters
    ----------
    learning_rate:
        Fraction of the residual corrected by each sample update.
    epochs_per_round:
        Epochs run by the adaptive trainer before each growth pass.
    max_iterations:
        Upper bound on train/grow rounds.
    min_rmse:
        Training stops early once the epoch RMSE falls below this value.
    jitter:
        Move table samples by up to one axis tolerance while training.
    """

    learning_rate: float = 0.15
    epochs_per_round: int = 100
    max_iterations: int = 40
    min_rmse: float = 0.0
    jitter: bool = False


OVERTRAIN_PHASE = PhaseSettings(learning_rate=0.2, epochs_per_round=5, max_iterations=120)
APPROXIMATION_PHASE = PhaseSettings(learning_rate=0.15, epochs_per_round=100, max_iterations=40)
AVERAGE_PHASE = PhaseSettings(learning_rate=0.2, epochs_per_round=10, max_iterations=20)


@dataclass(frozen=True, slots=True)
class ALNConfig:
    """Hyper-parameters steering ALN growth, noise estimation and bagging.

    Parameters
    ----------
    n_trees:
        Number of independently trained trees averaged by the ensemble.
    f_limit_mode:
        ``"fixed"`` uses :attr:`f_limit` as is. ``"table"`` looks the limit up
        in :attr:`f_table` from the dimension of the problem.
    f_limit:
        Ratio of piece training MSE to mean noise variance above which a piece
        is split (fixed mode).
    f_table:
        F-test limits indexed by degrees of freedom (table mode).
    overtrain_f_limit:
        Split threshold used without noise samples, in units of the output
        variance. Small values make the auxiliary trees overfit.
    split_operator:
        ``"auto"`` picks MAX when a piece's residuals grow with the distance
        from its centroid and MIN otherwise; ``"min"`` / ``"max"`` fix it.
    split_perturbation:
        Relative weight offset given to the two children of a split.
    convergence_tolerance:
        A piece whose mean per-sample change over an epoch is below this
        fraction of the output scale is considered settled.
    smoothing:
        Width of the quadratic fillet applied at MIN/MAX nodes. ``0`` keeps
        the exact piecewise-linear surface; ``"auto"`` uses one hundredth of
        the output standard deviation.
    domain_margin:
        Domain bounds extend this many standard deviations beyond the data.
    epsilon:
        Optional per-axis tolerances. Estimated from the data when ``None``.
    weight_min / weight_max:
        Optional a-priori per-axis weight bounds intersected with the bounds
        derived from the data.
    overtrain / approximate / average:
        Learning schedules of the noise-estimation, ensemble and average-tree
        phases.
    train_average:
        Fit the average tree even for a single-tree ensemble.
    estimate_noise:
        When ``False`` a noise variance must be supplied to ``fit``.
    max_export_depth:
        Depth bound for decision-tree export.
    n_jobs:
        Worker threads for ensemble members and noise trees. ``1`` trains
        inline.
    random_state:
        Optional seed for every random stream of a fit.
    device:
        Torch device used for batched inference.
    """

    n_trees: int = 1
    f_limit_mode: Literal["fixed", "table"] = "fixed"
    f_limit: float = 1.4
    f_table: tuple[float, ...] = DEFAULT_F_TABLE
    overtrain_f_limit: float = 0.001
    split_operator: Literal["auto", "min", "max"] = "auto"
    split_perturbation: float = 0.01
    convergence_tolerance: float = 1e-5
    smoothing: float | Literal["auto"] = 0.0
    domain_margin: float = 0.1
    epsilon: Sequence[float] | None = None
    weight_min: Sequence[float] | None = None
    weight_max: Sequence[float] | None = None
    overtrain: PhaseSettings = OVERTRAIN_PHASE
    approximate: PhaseSettings = APPROXIMATION_PHASE
    average: PhaseSettings = AVERAGE_PHASE
    train_average: bool = False
    estimate_noise: bool = True
    max_export_depth: int = 64
    n_jobs: int = 1
    random_state: int | None = None
    device: str = "cpu"


def resolve_f_limit(config: ALNConfig, dimension: int) -> float:
    """Return the split limit for a problem with ``dimension`` variables."""
    if config.f_limit_mode == "fixed":
        return float(config.f_limit)
    if config.f_limit_mode != "table":
        raise ValueError(f"Unsupported f_limit_mode: {config.f_limit_mode}")
    if dimension < 2:
        raise ValueError("dimension must be at least 2")
    # the lowest dimension is one input plus the output
    dof_index = dimension - 2
    if dimension > 10:
        dof_index = 8
    if dimension > 20:
        dof_index = 9
    if dimension > 30:
        dof_index = 10
    if dimension > 40:
        dof_index = 11
    if dimension > 60:
        dof_index = 12
    table = tuple(config.f_table)
    return float(table[min(dof_index, len(table) - 1)])


def resolve_n_jobs(config: ALNConfig) -> int:
    env_jobs = os.getenv("ALNFIT_N_JOBS")
    jobs = int(env_jobs) if env_jobs else int(config.n_jobs)
    return max(1, jobs)


def resolve_smoothing(config: ALNConfig, output_stdev: float) -> float:
    """Return the fillet width for a problem whose output has ``output_stdev``."""
    if config.smoothing == "auto":
        return float(output_stdev) / 100.0
    if isinstance(config.smoothing, str):
        raise ValueError(f"Unsupported smoothing: {config.smoothing}")
    smoothing = float(config.smoothing)
    if smoothing < 0:
        raise ValueError("smoothing must be non-negative")
    return smoothing
