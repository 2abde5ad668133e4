"""End-to-end ALN fitting: noise estimation, bagging, averaging, export."""

from __future__ import annotations

import json
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import nullcontext
from pathlib import Path
from time import perf_counter
from typing import Callable, Optional, Sequence

import numpy as np

from .config import ALNConfig, resolve_n_jobs
from .core.tree import ALNTree, AxisConstraints
from .data import (
    AxisStats,
    LinearStart,
    NoiseTable,
    Partition,
    compute_axis_stats,
    ensure_numpy,
    fit_linear_start,
    prepare_constraints,
)
from .ensemble import Ensemble, EnsembleReport, fit_average_tree, train_ensemble
from .model import FlattenedTree, export_tree
from .noise import estimate_noise_variance
from .predictor import DTreePredictor


class ALNFit:
    """Fits a bagged ALN approximation and exports it as a decision tree."""

    def __init__(self, config: ALNConfig) -> None:
        self.config = config
        self._logger = logging.getLogger(__name__)
        self._rng = np.random.default_rng(config.random_state)

        # Runtime state
        self._stats: AxisStats | None = None
        self._constraints: AxisConstraints | None = None
        self._linear_start: LinearStart | None = None
        self._noise: NoiseTable | None = None
        self._ensemble: Ensemble | None = None
        self._report: EnsembleReport | None = None
        self._iteration_logs: list[dict[str, object]] = []
        self._stage_seconds: dict[str, float] = {}

    # Public -------------------------------------------------------------

    @property
    def trees(self) -> Sequence[ALNTree]:
        return self._ensemble.trees if self._ensemble is not None else ()

    @property
    def average_tree(self) -> ALNTree | None:
        return self._ensemble.average_tree if self._ensemble is not None else None

    @property
    def noise_table(self) -> NoiseTable | None:
        return self._noise

    @property
    def linear_start(self) -> LinearStart | None:
        return self._linear_start

    @property
    def constraints(self) -> AxisConstraints | None:
        return self._constraints

    @property
    def report(self) -> EnsembleReport | None:
        """Accuracy and importance report of the most recent ``fit``."""
        return self._report

    @property
    def iteration_logs(self) -> Sequence[dict[str, object]]:
        """Per-iteration growth metrics recorded during the most recent ``fit``."""
        return self._iteration_logs

    @property
    def stage_seconds(self) -> dict[str, float]:
        return self._stage_seconds

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        *,
        validate: tuple[np.ndarray, np.ndarray] | None = None,
        noise_variance: np.ndarray | float | None = None,
        progress_callback: Callable[[str, int, dict], None] | None = None,
    ) -> "ALNFit":
        """Grow the ensemble on ``(X, y)``.

        ``noise_variance`` may be a scalar or one value per row; when it is
        omitted the variance is estimated from the data, unless
        ``config.estimate_noise`` is off. ``validate`` selects the rows the
        final report is computed on (the training rows otherwise).
        """

        train = Partition.from_xy("train", X, y)
        if train.n_rows < 2:
            raise ValueError("At least two training rows are required")
        validate_partition = Partition.from_xy("validate", *validate) if validate is not None else None
        if validate_partition is not None and validate_partition.dimension != train.dimension:
            raise ValueError("validate must have the same number of columns as X")

        self._iteration_logs = []
        self._stage_seconds = {}
        self._ensemble = None
        self._report = None

        def record(stage: str, iteration: int, metrics: dict) -> None:
            self._iteration_logs.append(dict(metrics))
            if progress_callback is not None:
                progress_callback(stage, iteration, metrics)

        self._stats = compute_axis_stats(train.rows)
        self._constraints = prepare_constraints(self._stats, self.config)
        self._linear_start = fit_linear_start(train)
        if self._logger.isEnabledFor(logging.INFO):
            self._logger.info(
                json.dumps(
                    {
                        "stage": "linear_start",
                        "rmse": self._linear_start.rmse,
                        "weights": self._linear_start.weights.tolist(),
                        "bias": self._linear_start.bias,
                    }
                )
            )

        n_jobs = resolve_n_jobs(self.config)
        pool = ThreadPoolExecutor(max_workers=n_jobs) if n_jobs > 1 else nullcontext()
        with pool as executor:
            start = perf_counter()
            if noise_variance is not None:
                self._noise = NoiseTable.from_values(train, noise_variance)
            elif self.config.estimate_noise:
                self._noise = estimate_noise_variance(
                    train,
                    self._constraints,
                    self.config,
                    self._rng,
                    start=self._linear_start,
                    executor=executor,
                    callback=record,
                )
            else:
                raise ValueError("noise_variance is required when estimate_noise is disabled")
            if self._noise.n_rows != train.n_rows:
                raise ValueError("noise_variance must provide one value per training row")
            self._stage_seconds["noise"] = perf_counter() - start

            start = perf_counter()
            ensemble = train_ensemble(
                train,
                self._noise,
                self._constraints,
                self.config,
                self._rng,
                start=self._linear_start,
                executor=executor,
                callback=record,
            )
            self._stage_seconds["ensemble"] = perf_counter() - start

        self._report = ensemble.report(validate_partition or train, device=self.config.device)

        if ensemble.n_trees > 1 or self.config.train_average:
            start = perf_counter()
            fit_average_tree(
                ensemble,
                train,
                self._noise,
                self._constraints,
                self.config,
                self._rng,
                start=self._linear_start,
                callback=record,
            )
            self._stage_seconds["average"] = perf_counter() - start
        self._ensemble = ensemble
        return self

    def submit(self, executor: Executor, X: np.ndarray, y: np.ndarray, **kwargs: object) -> "Future[ALNFit]":
        """Schedule :meth:`fit` on ``executor`` and return its future."""
        return executor.submit(self.fit, X, y, **kwargs)

    def final_tree(self) -> ALNTree:
        """The tree that represents the fit: the average tree when one exists."""
        if self._ensemble is None:
            raise RuntimeError("Model must be fitted before final_tree()")
        if self._ensemble.average_tree is not None:
            return self._ensemble.average_tree
        return self._ensemble.trees[0]

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Average-tree output when one was fitted, else the ensemble mean."""
        if self._ensemble is None:
            raise RuntimeError("Model must be fitted before predict()")
        X_np = self._inputs(X)
        if self._ensemble.average_tree is not None:
            return self._ensemble.average_tree.predict(X_np, device=self.config.device)
        return self._ensemble.predict(X_np, device=self.config.device)

    def predict_ensemble(self, X: np.ndarray) -> np.ndarray:
        """Mean of the member trees, ignoring any average tree."""
        if self._ensemble is None:
            raise RuntimeError("Model must be fitted before predict_ensemble()")
        return self._ensemble.predict(self._inputs(X), device=self.config.device)

    def _inputs(self, X: np.ndarray) -> np.ndarray:
        X_np = ensure_numpy(X).astype(np.float64, copy=False)
        if X_np.ndim == 1:
            # a single row, unless the model has one input
            n_inputs = self._ensemble.dimension - 1
            X_np = X_np.reshape(-1, 1) if n_inputs == 1 else X_np.reshape(1, -1)
        return X_np

    def export(self, max_depth: Optional[int] = None) -> FlattenedTree:
        """Flatten :meth:`final_tree` into a decision tree.

        Raises :class:`~alnfit.model.DepthExceededError` when the tree is
        deeper than ``max_depth`` (``config.max_export_depth`` by default).
        """
        depth = self.config.max_export_depth if max_depth is None else max_depth
        return export_tree(self.final_tree(), max_depth=depth)

    def save(self, path: str | Path, max_depth: Optional[int] = None) -> DTreePredictor:
        predictor = DTreePredictor(self.export(max_depth), device=self.config.device)
        predictor.to_json(path)
        return predictor
