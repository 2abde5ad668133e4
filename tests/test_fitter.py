from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd
import pytest

from alnfit import ALNConfig, ALNFit, DepthExceededError, DTreePredictor, PhaseSettings

FAST_OVERTRAIN = PhaseSettings(learning_rate=0.2, epochs_per_round=5, max_iterations=15)
FAST_APPROX = PhaseSettings(learning_rate=0.15, epochs_per_round=20, max_iterations=4)
FAST_AVERAGE = PhaseSettings(learning_rate=0.2, epochs_per_round=10, max_iterations=4)


def _config(**overrides) -> ALNConfig:
    params = dict(
        overtrain=FAST_OVERTRAIN,
        approximate=FAST_APPROX,
        average=FAST_AVERAGE,
        random_state=42,
    )
    params.update(overrides)
    return ALNConfig(**params)


def _identity() -> tuple[np.ndarray, np.ndarray]:
    x = np.arange(10, dtype=np.float64)
    return x.reshape(-1, 1), x.copy()


def _noisy_vee(n_rows: int = 60, seed: int = 0) -> tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(seed)
    X = rng.uniform(-1.0, 1.0, size=(n_rows, 2))
    y = np.abs(X[:, 0]) + 0.5 * X[:, 1] + rng.normal(0.0, 0.05, size=n_rows)
    return X, y


def test_identity_fits_with_a_single_piece() -> None:
    X, y = _identity()
    fitter = ALNFit(_config(f_limit=1e6)).fit(X, y)

    assert len(fitter.trees) == 1
    tree = fitter.trees[0]
    assert tree.leaf_count == 1
    leaf = tree.leaf(tree.root)
    np.testing.assert_allclose(leaf.weights, [1.0], atol=1e-6)
    assert leaf.bias == pytest.approx(0.0, abs=1e-6)
    assert fitter.report.rmse < 1e-6
    assert fitter.average_tree is None
    np.testing.assert_allclose(fitter.predict(X), y, atol=1e-6)


def test_noisy_identity_grows_with_low_f_limit() -> None:
    X, y = _identity()
    y = y + np.random.default_rng(42).normal(0.0, 0.5, size=y.size)
    fitter = ALNFit(_config(f_limit=0.01)).fit(X, y)

    assert fitter.noise_table.n_rows == 10
    assert fitter.trees[0].leaf_count >= 2


def test_bagged_noiseless_plane() -> None:
    rng = np.random.default_rng(42)
    X = rng.uniform(-1.0, 1.0, size=(30, 2))
    y = 2.0 * X[:, 0] - X[:, 1] + 0.5
    fitter = ALNFit(_config(n_trees=3)).fit(X, y)

    assert len(fitter.trees) == 3
    assert fitter.report.rmse < 1e-6
    for tree in fitter.trees:
        np.testing.assert_allclose(tree.predict(X), y, atol=1e-6)
    assert fitter.average_tree is not None
    assert fitter.final_tree() is fitter.average_tree
    np.testing.assert_allclose(fitter.predict(X), y, atol=1e-3)
    np.testing.assert_allclose(fitter.predict_ensemble(X), y, atol=1e-6)
    assert "average" in fitter.stage_seconds


def test_dataframe_input_and_validate_report() -> None:
    X, y = _noisy_vee()
    frame = pd.DataFrame(X, columns=["a", "b"])
    X_val, y_val = _noisy_vee(20, seed=1)
    fitter = ALNFit(_config()).fit(frame, pd.Series(y), validate=(X_val, y_val))

    preds = fitter.predict(frame)
    assert preds.shape == (60,)
    assert fitter.report.n_rows == 20
    assert fitter.report.importance.shape == (2,)
    assert np.all(fitter.report.importance >= 0.0)


def test_iteration_logs_and_progress_callback() -> None:
    X, y = _noisy_vee()
    seen = []
    fitter = ALNFit(_config()).fit(X, y, progress_callback=lambda stage, i, m: seen.append(stage))

    assert len(fitter.iteration_logs) == len(seen)
    stages = set(seen)
    assert {"noise_a", "noise_b", "tree_0"} <= stages
    assert {"stage", "iteration", "rmse", "leaves"} <= set(fitter.iteration_logs[-1])


def test_single_row_prediction() -> None:
    X, y = _noisy_vee()
    fitter = ALNFit(_config(n_trees=2)).fit(X, y)
    np.testing.assert_allclose(fitter.predict(X[0]), fitter.predict(X[:1]))
    np.testing.assert_allclose(fitter.predict_ensemble(X[3]), fitter.predict_ensemble(X[3:4]))
    assert fitter.predict(X[0]).shape == (1,)

    X_line, y_line = _identity()
    line = ALNFit(_config()).fit(X_line, y_line)
    assert line.predict(X_line[:, 0]).shape == (10,)


def test_given_noise_variance_skips_estimation() -> None:
    X, y = _noisy_vee()
    seen = []
    fitter = ALNFit(_config(estimate_noise=False)).fit(
        X, y, noise_variance=0.0025, progress_callback=lambda stage, i, m: seen.append(stage)
    )
    assert "noise_a" not in seen
    np.testing.assert_allclose(fitter.noise_table.values, 0.0025)

    per_row = np.full(y.size, 0.01)
    fitter = ALNFit(_config(estimate_noise=False)).fit(X, y, noise_variance=per_row)
    np.testing.assert_allclose(fitter.noise_table.values, per_row)


def test_missing_noise_variance_is_an_error() -> None:
    X, y = _noisy_vee()
    with pytest.raises(ValueError):
        ALNFit(_config(estimate_noise=False)).fit(X, y)
    with pytest.raises(ValueError):
        ALNFit(_config()).fit(X, y, noise_variance=np.ones(3))


def test_constant_input_is_rejected() -> None:
    X, y = _noisy_vee()
    X[:, 1] = 4.0
    with pytest.raises(ValueError, match="constant"):
        ALNFit(_config()).fit(X, y)


def test_unfitted_model_raises() -> None:
    fitter = ALNFit(_config())
    with pytest.raises(RuntimeError):
        fitter.predict(np.zeros((2, 2)))
    with pytest.raises(RuntimeError):
        fitter.export()


def test_fit_is_deterministic_and_thread_count_independent() -> None:
    X, y = _noisy_vee()
    first = ALNFit(_config(n_trees=2)).fit(X, y).predict(X)
    second = ALNFit(_config(n_trees=2)).fit(X, y).predict(X)
    pooled = ALNFit(_config(n_trees=2, n_jobs=2)).fit(X, y).predict(X)
    np.testing.assert_allclose(first, second)
    np.testing.assert_allclose(first, pooled)


def test_submit_runs_in_background() -> None:
    X, y = _noisy_vee()
    fitter = ALNFit(_config())
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = fitter.submit(executor, X, y)
        assert future.result() is fitter
    assert fitter.predict(X).shape == (X.shape[0],)


def test_export_and_save(tmp_path) -> None:
    X, y = _noisy_vee()
    fitter = ALNFit(_config(train_average=True)).fit(X, y)
    assert fitter.average_tree is not None

    flat = fitter.export()
    np.testing.assert_allclose(flat.predict(X), fitter.final_tree().predict(X))

    depth = fitter.final_tree().depth
    if depth > 0:
        with pytest.raises(DepthExceededError):
            fitter.export(max_depth=depth - 1)

    path = tmp_path / "fit.json"
    fitter.save(path)
    loaded = DTreePredictor.from_json(path)
    np.testing.assert_allclose(loaded.predict(X), fitter.predict(X))
