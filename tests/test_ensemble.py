from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

import alnfit.ensemble as ensemble_module
from alnfit.config import ALNConfig, PhaseSettings
from alnfit.core.trainer import TrainingContext
from alnfit.core.tree import ALNTree, AxisConstraints
from alnfit.data import NoiseTable, Partition, compute_axis_stats, fit_linear_start, prepare_constraints
from alnfit.ensemble import AverageSampler, Ensemble, fit_average_tree, train_ensemble
from alnfit.model import export_tree

FAST_APPROX = PhaseSettings(learning_rate=0.15, epochs_per_round=20, max_iterations=4)
FAST_AVERAGE = PhaseSettings(learning_rate=0.2, epochs_per_round=10, max_iterations=4)


def _plane_rows(n_rows: int = 30, seed: int = 42) -> np.ndarray:
    rng = np.random.default_rng(seed)
    X = rng.uniform(-1.0, 1.0, size=(n_rows, 2))
    return np.column_stack([X, 2.0 * X[:, 0] - X[:, 1] + 0.5])


def _linear_tree(weights, bias: float = 0.0) -> ALNTree:
    weights = np.asarray(weights, dtype=np.float64)
    tree = ALNTree(weights.size + 1, AxisConstraints.unbounded(weights.size))
    tree.seed_root(weights, np.zeros(weights.size), bias)
    return tree


def _rmse(predictions: np.ndarray, targets: np.ndarray) -> float:
    return float(np.sqrt(np.mean((predictions - targets) ** 2)))


def test_noiseless_ensemble_and_average_tree_recover_the_plane() -> None:
    rows = _plane_rows()
    config = ALNConfig(n_trees=3, approximate=FAST_APPROX, average=FAST_AVERAGE, random_state=0)
    partition = Partition("train", rows)
    constraints = prepare_constraints(compute_axis_stats(rows), config)
    start = fit_linear_start(partition)
    noise = NoiseTable.constant(partition, 0.0)
    rng = np.random.default_rng(0)

    ensemble = train_ensemble(partition, noise, constraints, config, rng, start=start)

    assert ensemble.n_trees == 3
    for tree in ensemble.trees:
        assert _rmse(tree.predict(partition.inputs), partition.targets) < 1e-6
    report = ensemble.report(partition)
    assert report.rmse < 1e-6

    average = fit_average_tree(ensemble, partition, noise, constraints, config, rng, start=start)
    assert ensemble.average_tree is average
    assert _rmse(average.predict(partition.inputs), partition.targets) < 1e-4


def test_predict_is_the_member_mean() -> None:
    ensemble = Ensemble(trees=[_linear_tree([1.0], 0.0), _linear_tree([3.0], 2.0)])
    X = np.linspace(-2.0, 2.0, 9).reshape(-1, 1)
    np.testing.assert_allclose(ensemble.predict(X), 2.0 * X[:, 0] + 1.0)
    assert ensemble.evaluate(np.array([1.0])) == pytest.approx(3.0)


def test_report_importance_and_average_weight() -> None:
    rng = np.random.default_rng(42)
    X = rng.normal(size=(40, 2))
    y = 3.0 * X[:, 0]
    partition = Partition("validate", np.column_stack([X, y]))
    ensemble = Ensemble(trees=[_linear_tree([2.0, 0.0]), _linear_tree([4.0, 0.0])])

    report = ensemble.report(partition)

    assert report.rmse == pytest.approx(0.0, abs=1e-12)
    np.testing.assert_allclose(report.average_weight, [3.0, 0.0])
    np.testing.assert_allclose(report.importance, [1.0, 0.0])
    assert report.n_rows == 40
    assert report.to_dict()["importance"] == pytest.approx([1.0, 0.0])


def test_report_rejects_constant_output() -> None:
    x = np.linspace(0.0, 1.0, 5)
    partition = Partition("validate", np.column_stack([x, np.ones(5)]))
    ensemble = Ensemble(trees=[_linear_tree([0.0], 1.0)])
    with pytest.raises(ValueError):
        ensemble.report(partition)


def test_empty_ensemble_rejected() -> None:
    with pytest.raises(ValueError):
        Ensemble(trees=[])


def test_members_see_noise_divided_by_ensemble_size(monkeypatch) -> None:
    rows = _plane_rows()
    config = ALNConfig(n_trees=4, approximate=FAST_APPROX)
    partition = Partition("train", rows)
    constraints = prepare_constraints(compute_axis_stats(rows), config)
    seen = []
    real_grow = ensemble_module.grow

    def recording_grow(tree, source, noise, f_limit, context, phase=None):
        seen.append(noise.values.copy())
        return real_grow(tree, source, noise, f_limit, context, phase)

    monkeypatch.setattr(ensemble_module, "grow", recording_grow)
    train_ensemble(partition, NoiseTable.constant(partition, 2.0), constraints, config, np.random.default_rng(0))

    assert len(seen) == 4
    for values in seen:
        np.testing.assert_allclose(values, 0.5)


@pytest.mark.parametrize("use_executor", [False, True])
def test_member_failure_fails_the_ensemble(monkeypatch, use_executor) -> None:
    rows = _plane_rows()
    config = ALNConfig(n_trees=3, approximate=FAST_APPROX)
    partition = Partition("train", rows)
    constraints = prepare_constraints(compute_axis_stats(rows), config)
    real_grow = ensemble_module.grow

    def flaky_grow(tree, source, noise, f_limit, context, phase=None):
        if context.label == "tree_1":
            raise ValueError("boom")
        return real_grow(tree, source, noise, f_limit, context, phase)

    monkeypatch.setattr(ensemble_module, "grow", flaky_grow)
    noise = NoiseTable.constant(partition, 0.01)
    with pytest.raises(RuntimeError) as excinfo:
        if use_executor:
            with ThreadPoolExecutor(max_workers=3) as executor:
                train_ensemble(partition, noise, constraints, config, np.random.default_rng(0), executor=executor)
        else:
            train_ensemble(partition, noise, constraints, config, np.random.default_rng(0))
    assert isinstance(excinfo.value.__cause__, ValueError)


def test_executor_matches_inline_training() -> None:
    rng = np.random.default_rng(9)
    x = np.linspace(-1.0, 1.0, 30)
    rows = np.column_stack([x, np.abs(x) + rng.normal(0.0, 0.02, size=x.size)])
    config = ALNConfig(n_trees=2, approximate=FAST_APPROX)
    partition = Partition("train", rows)
    constraints = prepare_constraints(compute_axis_stats(rows), config)
    start = fit_linear_start(partition)
    noise = NoiseTable.constant(partition, 4e-4)

    inline = train_ensemble(partition, noise, constraints, config, np.random.default_rng(3), start=start)
    with ThreadPoolExecutor(max_workers=2) as executor:
        pooled = train_ensemble(
            partition, noise, constraints, config, np.random.default_rng(3), start=start, executor=executor
        )
    np.testing.assert_allclose(inline.predict(partition.inputs), pooled.predict(partition.inputs))
    assert [t.leaf_count for t in inline.trees] == [t.leaf_count for t in pooled.trees]


def test_average_sampler_labels_rows_with_ensemble_mean() -> None:
    rows = _plane_rows(10)
    partition = Partition("train", rows)
    constraints = prepare_constraints(compute_axis_stats(rows), ALNConfig())
    ensemble = Ensemble(trees=[_linear_tree([1.0, 1.0]), _linear_tree([3.0, -1.0], 1.0)])
    sampler = AverageSampler(ensemble, partition, constraints)
    context = TrainingContext(config=ALNConfig(), rng=np.random.default_rng(0), phase=FAST_AVERAGE)

    for _ in range(20):
        row = sampler(context)
        assert row.shape == (3,)
        assert row[-1] == pytest.approx(2.0 * row[0] + 0.5)
        distances = np.abs(partition.inputs - row[:2])
        assert np.any(np.all(distances <= constraints.epsilon, axis=1))


def test_auto_smoothing_follows_output_spread() -> None:
    rows = _plane_rows()
    config = ALNConfig(smoothing="auto", approximate=FAST_APPROX)
    partition = Partition("train", rows)
    constraints = prepare_constraints(compute_axis_stats(rows), config)
    ensemble = train_ensemble(partition, NoiseTable.constant(partition, 0.0), constraints, config, np.random.default_rng(0))
    expected = np.std(rows[:, -1], ddof=1) / 100.0
    assert ensemble.trees[0].smoothing == pytest.approx(expected)
    assert export_tree(ensemble.trees[0]).smoothing == pytest.approx(expected)
