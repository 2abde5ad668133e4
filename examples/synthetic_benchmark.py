"""Benchmark ALN fitting against scikit-learn trees on a noisy surface."""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestRegressor
from sklearn.metrics import r2_score
from sklearn.model_selection import train_test_split
from sklearn.tree import DecisionTreeRegressor

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alnfit.config import ALNConfig, PhaseSettings
from alnfit.fitter import ALNFit


N_SAMPLES = 1500
NOISE = 0.1
SEED = 123

N_TREES = 4
MAX_DEPTH = 8


@dataclass
class BenchmarkResult:
    name: str
    fit_time: float
    predict_time: float
    r2: float


def generate_data() -> tuple[np.ndarray, np.ndarray]:
    """Sample a bowl with a ridge, a shape piecewise-linear models handle well."""
    rng = np.random.default_rng(SEED)
    X = rng.uniform(-1.0, 1.0, size=(N_SAMPLES, 2))
    y = np.abs(X[:, 0]) + np.maximum(X[:, 1], 0.5 * X[:, 1]) + rng.normal(0.0, NOISE, size=N_SAMPLES)
    return X, y


def benchmark(
    name: str,
    fit_fn: Callable[[], None],
    predict_fn: Callable[[], np.ndarray],
    y_true: np.ndarray,
) -> BenchmarkResult:
    """Measure fit/predict time and compute R^2."""
    t0 = time.perf_counter()
    fit_fn()
    fit_time = time.perf_counter() - t0

    t0 = time.perf_counter()
    preds = predict_fn()
    predict_time = time.perf_counter() - t0

    r2 = float(r2_score(y_true, preds))
    return BenchmarkResult(name=name, fit_time=fit_time, predict_time=predict_time, r2=r2)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(name)s %(message)s")
    X, y = generate_data()
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.2, random_state=SEED)
    X_train_df = pd.DataFrame(X_train, columns=["x0", "x1"])

    results: List[BenchmarkResult] = []

    aln_config = ALNConfig(
        n_trees=N_TREES,
        approximate=PhaseSettings(learning_rate=0.15, epochs_per_round=20, max_iterations=15),
        n_jobs=N_TREES,
        random_state=SEED,
    )
    aln = ALNFit(aln_config)
    results.append(
        benchmark(
            "ALN",
            lambda: aln.fit(X_train_df, y_train, validate=(X_test, y_test)),
            lambda: aln.predict(X_test),
            y_test,
        )
    )
    exported = aln.export(max_depth=64)
    results.append(
        benchmark(
            "ALN (dtree)",
            lambda: None,
            lambda: exported.predict(X_test),
            y_test,
        )
    )

    tree = DecisionTreeRegressor(max_depth=MAX_DEPTH, random_state=SEED)
    results.append(
        benchmark(
            "DecisionTree",
            lambda: tree.fit(X_train, y_train),
            lambda: tree.predict(X_test),
            y_test,
        )
    )

    forest = RandomForestRegressor(n_estimators=100, max_depth=MAX_DEPTH, n_jobs=-1, random_state=SEED)
    results.append(
        benchmark(
            "RandomForest",
            lambda: forest.fit(X_train, y_train),
            lambda: forest.predict(X_test),
            y_test,
        )
    )

    print("Model         Fit (s)   Predict (s)   R^2")
    print("-" * 44)
    for res in results:
        print(f"{res.name:<12} {res.fit_time:>8.3f} {res.predict_time:>12.3f} {res.r2:>7.4f}")
    print(f"ALN leaves per tree: {[tree.leaf_count for tree in aln.trees]}")
    print(f"Input importance: {aln.report.importance.round(3).tolist()}")
