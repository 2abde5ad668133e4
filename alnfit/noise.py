"""Noise-variance estimation by cross-evaluating two overtrained trees."""

from __future__ import annotations

import json
import logging
from concurrent.futures import Executor
from typing import Optional

import numpy as np

from .config import ALNConfig, resolve_smoothing
from .core.growth import grow
from .core.trainer import ProgressCallback, TableSource, TrainingContext
from .core.tree import ALNTree, AxisConstraints
from .data import LinearStart, NoiseTable, Partition

logger = logging.getLogger(__name__)


def split_halves(n_rows: int, rng: np.random.Generator) -> tuple[np.ndarray, np.ndarray]:
    """Random disjoint halves of ``range(n_rows)``; the second takes the odd row."""
    if n_rows < 2:
        raise ValueError("At least two rows are needed to estimate noise variance")
    order = rng.permutation(n_rows)
    half = n_rows // 2
    return np.sort(order[:half]), np.sort(order[half:])


def overtrain_tree(
    partition: Partition,
    constraints: AxisConstraints,
    config: ALNConfig,
    rng: np.random.Generator,
    *,
    start: Optional[LinearStart] = None,
    label: str = "overtrain",
    callback: Optional[ProgressCallback] = None,
) -> ALNTree:
    """Grow a tree on ``partition`` until it nearly interpolates it."""

    relaxed = constraints.relaxed()
    smoothing = resolve_smoothing(config, constraints.output_scale)
    if start is not None:
        tree = ALNTree.from_start(relaxed, start, smoothing=smoothing)
    else:
        tree = ALNTree(partition.dimension, relaxed, smoothing=smoothing)
    context = TrainingContext(config=config, rng=rng, phase=config.overtrain, label=label, callback=callback)
    grow(tree, TableSource(partition.rows), None, config.overtrain_f_limit, context)
    return tree


def cross_residuals(tree: ALNTree, partition: Partition) -> np.ndarray:
    """Squared errors of ``tree`` on rows it was not trained on, bias-corrected."""
    predictions = np.array([tree.evaluate(x)[0] for x in partition.inputs])
    residual = partition.targets - predictions
    # two independent noise terms enter each residual
    return residual * residual / (1.0 + 1.0 / partition.dimension)


def estimate_noise_variance(
    partition: Partition,
    constraints: AxisConstraints,
    config: ALNConfig,
    rng: np.random.Generator,
    *,
    start: Optional[LinearStart] = None,
    executor: Optional[Executor] = None,
    callback: Optional[ProgressCallback] = None,
) -> NoiseTable:
    """Sample the noise variance at every row of ``partition``.

    Two trees are overtrained on disjoint halves of the rows; each one is
    evaluated on the other half. Both trees are finished before either is
    evaluated.
    """

    idx_a, idx_b = split_halves(partition.n_rows, rng)
    half_a = partition.take(idx_a, "half_a")
    half_b = partition.take(idx_b, "half_b")
    rng_a, rng_b = rng.spawn(2)

    jobs = (
        (half_a, rng_a, "noise_a"),
        (half_b, rng_b, "noise_b"),
    )
    if executor is not None:
        futures = [
            executor.submit(
                overtrain_tree, half, constraints, config, child_rng, start=start, label=label, callback=callback
            )
            for half, child_rng, label in jobs
        ]
        tree_a, tree_b = (future.result() for future in futures)
    else:
        tree_a, tree_b = (
            overtrain_tree(half, constraints, config, child_rng, start=start, label=label, callback=callback)
            for half, child_rng, label in jobs
        )

    values = np.empty(partition.n_rows, dtype=np.float64)
    values[idx_b] = cross_residuals(tree_a, half_b)
    values[idx_a] = cross_residuals(tree_b, half_a)
    table = NoiseTable(partition.inputs, values)

    if logger.isEnabledFor(logging.INFO):
        logger.info(
            json.dumps(
                {
                    "stage": "noise",
                    "mean_variance": table.mean,
                    "leaves_a": tree_a.leaf_count,
                    "leaves_b": tree_b.leaf_count,
                }
            )
        )
    return table
