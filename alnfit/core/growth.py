"""Split controller: grow pieces whose error exceeds the local noise."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..config import PhaseSettings
from ..data import NoiseTable
from .trainer import RowSource, TrainingContext, train
from .tree import ALNTree, LeafNode

logger = logging.getLogger(__name__)


@dataclass
class GrowthReport:
    """Outcome of a train/split loop on one tree."""

    iterations: int
    rmse: float
    leaf_count: int
    splits: int
    converged: bool


def accumulate_noise(tree: ALNTree, noise: NoiseTable) -> None:
    """Route every noise sample to its active piece."""
    for leaf_id in tree.leaves():
        tree.leaf(leaf_id).reset_variance()
    for x, variance in zip(noise.inputs, noise.values):
        _, leaf_id = tree.evaluate(x)
        leaf = tree.leaf(leaf_id)
        leaf.variance_sum += float(variance)
        leaf.variance_hits += 1


def choose_operator(leaf: LeafNode, mode: str) -> str:
    if mode in ("min", "max"):
        return mode
    if mode != "auto":
        raise ValueError(f"Unsupported split_operator: {mode}")
    # convex residuals call for a MAX of two planes
    return "max" if leaf.curvature > 0 else "min"


def split_offsets(tree: ALNTree, context: TrainingContext) -> np.ndarray:
    constraints = tree.constraints
    magnitude = context.config.split_perturbation * constraints.output_scale / constraints.domain_span
    signs = context.rng.choice((-1.0, 1.0), size=constraints.n_inputs)
    return magnitude * signs


def grow_pass(
    tree: ALNTree,
    noise: Optional[NoiseTable],
    f_limit: float,
    context: TrainingContext,
) -> bool:
    """Split every piece whose last-epoch MSE exceeds ``f_limit`` times its noise.

    Without a noise table the threshold is ``f_limit`` times the output
    variance. Pieces no sample reached are left alone. Returns whether any
    piece was split.
    """

    if noise is not None:
        accumulate_noise(tree, noise)
    output_variance = tree.constraints.output_scale**2
    # errors below this are rounding, not structure
    resolution = (context.config.convergence_tolerance * tree.constraints.output_scale) ** 2

    candidates = []
    for leaf_id in tree.leaves():
        leaf = tree.leaf(leaf_id)
        if leaf.train_hits == 0:
            logger.debug("leaf %d received no training samples; not split", leaf_id)
            continue
        mse = leaf.train_sse / leaf.train_hits
        if noise is None:
            threshold = f_limit * output_variance
        else:
            if leaf.variance_hits == 0:
                logger.debug("leaf %d received no noise samples; not split", leaf_id)
                continue
            threshold = f_limit * leaf.variance_sum / leaf.variance_hits
        if mse > max(threshold, resolution):
            candidates.append(leaf_id)

    for leaf_id in candidates:
        operator = choose_operator(tree.leaf(leaf_id), context.config.split_operator)
        tree.split_leaf(leaf_id, operator, split_offsets(tree, context))
    return bool(candidates)


def grow(
    tree: ALNTree,
    source: RowSource,
    noise: Optional[NoiseTable],
    f_limit: float,
    context: TrainingContext,
    phase: Optional[PhaseSettings] = None,
) -> GrowthReport:
    """Alternate training and growth passes until the tree settles.

    The loop ends after a round that neither split a piece nor left any
    piece unconverged, or once ``phase.max_iterations`` rounds have run.
    """

    phase = phase or context.phase
    total_splits = 0
    rmse = float("inf")
    settled = False
    iterations = 0
    for iteration in range(phase.max_iterations):
        report = train(
            tree,
            source,
            context,
            learning_rate=phase.learning_rate,
            max_epochs=phase.epochs_per_round,
            min_rmse=phase.min_rmse,
            jitter=phase.jitter,
        )
        leaves_before = tree.leaf_count
        grow_pass(tree, noise, f_limit, context)
        leaf_count = tree.leaf_count
        splits = leaf_count - leaves_before
        total_splits += splits
        rmse = report.rmse
        iterations = iteration + 1

        metrics = {
            "stage": context.label,
            "iteration": iteration,
            "rmse": rmse,
            "epochs": report.epochs,
            "leaves": leaf_count,
            "splits": splits,
            "converged": report.converged,
        }
        context.notify(iteration, metrics)
        if logger.isEnabledFor(logging.INFO):
            logger.info(json.dumps(metrics))

        if splits == 0 and report.converged:
            settled = True
            break

    return GrowthReport(
        iterations=iterations,
        rmse=rmse,
        leaf_count=tree.leaf_count,
        splits=total_splits,
        converged=settled,
    )
