"""Bagged ensembles of ALN trees and the tree fitted to their average."""

from __future__ import annotations

import json
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from .config import ALNConfig, resolve_f_limit, resolve_smoothing
from .core.growth import GrowthReport, grow
from .core.trainer import ProgressCallback, SamplerSource, TableSource, TrainingContext, jitter_inputs
from .core.tree import ALNTree, AxisConstraints
from .data import LinearStart, NoiseTable, Partition

logger = logging.getLogger(__name__)


@dataclass
class EnsembleReport:
    """Accuracy and per-input importance of an ensemble on a partition."""

    rmse: float
    importance: np.ndarray
    average_weight: np.ndarray
    n_rows: int

    def to_dict(self) -> dict:
        return {
            "rmse": self.rmse,
            "importance": self.importance.tolist(),
            "average_weight": self.average_weight.tolist(),
            "n_rows": self.n_rows,
        }


@dataclass
class Ensemble:
    """Independently grown trees whose outputs are averaged."""

    trees: List[ALNTree]
    reports: List[GrowthReport] = field(default_factory=list)
    average_tree: Optional[ALNTree] = None

    def __post_init__(self) -> None:
        if not self.trees:
            raise ValueError("An ensemble needs at least one tree")

    @property
    def n_trees(self) -> int:
        return len(self.trees)

    @property
    def dimension(self) -> int:
        return self.trees[0].dimension

    def evaluate(self, x: np.ndarray) -> float:
        return float(np.mean([tree.evaluate(x)[0] for tree in self.trees]))

    def predict(self, X: np.ndarray, *, device: str = "cpu") -> np.ndarray:
        preds = np.zeros(np.asarray(X).shape[0], dtype=np.float64)
        for tree in self.trees:
            preds += tree.predict(X, device=device)
        return preds / self.n_trees

    def report(self, partition: Partition, *, device: str = "cpu") -> EnsembleReport:
        """RMSE of the averaged prediction and input importance on ``partition``.

        The importance of an input is the standard deviation of that input
        times the mean absolute weight of the pieces active on the rows,
        relative to the standard deviation of the output.
        """

        if partition.n_rows < 2:
            raise ValueError("At least two rows are needed for an ensemble report")
        output_stdev = float(partition.targets.std(ddof=1))
        if output_stdev < 1e-10:
            raise ValueError("The output variable is constant on the report partition")

        n_inputs = self.dimension - 1
        predictions = np.zeros(partition.n_rows, dtype=np.float64)
        weight_sum = np.zeros(n_inputs, dtype=np.float64)
        abs_weight_sum = np.zeros(n_inputs, dtype=np.float64)
        for tree in self.trees:
            flat = tree.flatten()
            values, slots = flat.predict(partition.inputs, return_leaves=True)
            predictions += values
            weights = flat.weights[slots]
            weight_sum += weights.sum(axis=0)
            abs_weight_sum += np.abs(weights).sum(axis=0)
        predictions /= self.n_trees
        count = float(partition.n_rows * self.n_trees)

        residual = partition.targets - predictions
        rmse = float(np.sqrt(np.mean(residual * residual)))
        input_stdev = partition.inputs.std(axis=0, ddof=1)
        importance = input_stdev * (abs_weight_sum / count) / output_stdev
        report = EnsembleReport(
            rmse=rmse,
            importance=importance,
            average_weight=weight_sum / count,
            n_rows=partition.n_rows,
        )
        if logger.isEnabledFor(logging.INFO):
            logger.info(json.dumps({"stage": "report", "role": partition.role, **report.to_dict()}))
        return report


def _grow_member(
    index: int,
    partition: Partition,
    noise: NoiseTable,
    f_limit: float,
    constraints: AxisConstraints,
    config: ALNConfig,
    rng: np.random.Generator,
    start: Optional[LinearStart],
    callback: Optional[ProgressCallback],
) -> tuple[ALNTree, GrowthReport]:
    smoothing = resolve_smoothing(config, constraints.output_scale)
    if start is not None:
        tree = ALNTree.from_start(constraints, start, smoothing=smoothing)
    else:
        tree = ALNTree(partition.dimension, constraints, smoothing=smoothing)
    context = TrainingContext(config=config, rng=rng, phase=config.approximate, label=f"tree_{index}", callback=callback)
    report = grow(tree, TableSource(partition.rows), noise, f_limit, context)
    return tree, report


def train_ensemble(
    partition: Partition,
    noise: NoiseTable,
    constraints: AxisConstraints,
    config: ALNConfig,
    rng: np.random.Generator,
    *,
    start: Optional[LinearStart] = None,
    executor: Optional[Executor] = None,
    callback: Optional[ProgressCallback] = None,
) -> Ensemble:
    """Grow ``config.n_trees`` trees on ``partition``.

    Every member sees the noise table divided by the ensemble size, since
    the averaged output only has to match the variance of a mean. Members
    own their trees and random streams; a failure of any member fails the
    whole ensemble.
    """

    n_trees = int(config.n_trees)
    if n_trees < 1:
        raise ValueError("n_trees must be at least 1")
    if noise.n_rows != partition.n_rows:
        raise ValueError("Noise table must align with the training partition")
    shared_noise = noise.scaled(n_trees)
    f_limit = resolve_f_limit(config, partition.dimension)
    member_rngs = rng.spawn(n_trees)

    args = [
        (index, partition, shared_noise, f_limit, constraints, config, member_rngs[index], start, callback)
        for index in range(n_trees)
    ]
    results: List[tuple[ALNTree, GrowthReport]] = []
    if executor is not None:
        futures = [executor.submit(_grow_member, *member_args) for member_args in args]
        for index, future in enumerate(futures):
            try:
                results.append(future.result())
            except Exception as exc:
                for pending in futures:
                    pending.cancel()
                raise RuntimeError(f"Ensemble member {index} failed") from exc
    else:
        for index, member_args in enumerate(args):
            try:
                results.append(_grow_member(*member_args))
            except Exception as exc:
                raise RuntimeError(f"Ensemble member {index} failed") from exc

    ensemble = Ensemble(trees=[tree for tree, _ in results], reports=[report for _, report in results])
    if logger.isEnabledFor(logging.INFO):
        logger.info(
            json.dumps(
                {
                    "stage": "ensemble",
                    "n_trees": n_trees,
                    "leaves": [report.leaf_count for report in ensemble.reports],
                    "rmse": [report.rmse for report in ensemble.reports],
                }
            )
        )
    return ensemble


class AverageSampler:
    """Draws jittered training inputs labelled with the ensemble mean."""

    def __init__(self, ensemble: Ensemble, partition: Partition, constraints: AxisConstraints) -> None:
        self.ensemble = ensemble
        self.inputs = partition.inputs
        self.constraints = constraints

    def __call__(self, context: TrainingContext) -> np.ndarray:
        row = self.inputs[int(context.rng.integers(self.inputs.shape[0]))]
        x = jitter_inputs(row, self.constraints, context.rng)
        return np.append(x, self.ensemble.evaluate(x))


def fit_average_tree(
    ensemble: Ensemble,
    partition: Partition,
    noise: NoiseTable,
    constraints: AxisConstraints,
    config: ALNConfig,
    rng: np.random.Generator,
    *,
    start: Optional[LinearStart] = None,
    callback: Optional[ProgressCallback] = None,
) -> ALNTree:
    """Grow a single tree that reproduces the ensemble's averaged output."""

    smoothing = resolve_smoothing(config, constraints.output_scale)
    if start is not None:
        tree = ALNTree.from_start(constraints, start, smoothing=smoothing)
    else:
        tree = ALNTree(partition.dimension, constraints, smoothing=smoothing)
    sampler = SamplerSource(AverageSampler(ensemble, partition, constraints), epoch_size=partition.n_rows)
    context = TrainingContext(config=config, rng=rng, phase=config.average, label="average", callback=callback)
    grow(tree, sampler, noise.scaled(ensemble.n_trees), resolve_f_limit(config, partition.dimension), context)
    ensemble.average_tree = tree
    return tree
