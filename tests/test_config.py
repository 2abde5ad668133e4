import pytest

from alnfit.config import (
    ALNConfig,
    APPROXIMATION_PHASE,
    AVERAGE_PHASE,
    DEFAULT_F_TABLE,
    OVERTRAIN_PHASE,
    resolve_f_limit,
    resolve_n_jobs,
    resolve_smoothing,
)


def test_config_defaults():
    cfg = ALNConfig()
    assert cfg.n_trees == 1
    assert cfg.f_limit_mode == "fixed"
    assert cfg.f_limit == pytest.approx(1.4)
    assert cfg.device == "cpu"
    assert cfg.approximate == APPROXIMATION_PHASE


def test_phase_presets():
    assert (OVERTRAIN_PHASE.learning_rate, OVERTRAIN_PHASE.epochs_per_round, OVERTRAIN_PHASE.max_iterations) == (
        0.2,
        5,
        120,
    )
    assert (APPROXIMATION_PHASE.learning_rate, APPROXIMATION_PHASE.epochs_per_round) == (0.15, 100)
    assert (AVERAGE_PHASE.learning_rate, AVERAGE_PHASE.epochs_per_round, AVERAGE_PHASE.max_iterations) == (
        0.2,
        10,
        20,
    )


def test_fixed_f_limit_ignores_dimension():
    cfg = ALNConfig(f_limit=2.5)
    assert resolve_f_limit(cfg, 2) == pytest.approx(2.5)
    assert resolve_f_limit(cfg, 100) == pytest.approx(2.5)


@pytest.mark.parametrize(
    "dimension, expected",
    [
        (2, 9.00),
        (3, 5.39),
        (10, 2.32),
        (11, 2.32),
        (20, 2.32),
        (21, 1.79),
        (31, 1.61),
        (41, 1.51),
        (61, 1.40),
        (500, 1.40),
    ],
)
def test_table_f_limit(dimension, expected):
    cfg = ALNConfig(f_limit_mode="table")
    assert resolve_f_limit(cfg, dimension) == pytest.approx(expected)


def test_table_f_limit_uses_custom_table():
    table = tuple(float(i) for i in range(len(DEFAULT_F_TABLE)))
    cfg = ALNConfig(f_limit_mode="table", f_table=table)
    assert resolve_f_limit(cfg, 4) == pytest.approx(2.0)


def test_unknown_f_limit_mode_rejected():
    with pytest.raises(ValueError):
        resolve_f_limit(ALNConfig(f_limit_mode="bogus"), 3)  # type: ignore[arg-type]


def test_n_jobs_env_override(monkeypatch):
    monkeypatch.delenv("ALNFIT_N_JOBS", raising=False)
    assert resolve_n_jobs(ALNConfig(n_jobs=3)) == 3
    assert resolve_n_jobs(ALNConfig(n_jobs=0)) == 1
    monkeypatch.setenv("ALNFIT_N_JOBS", "4")
    assert resolve_n_jobs(ALNConfig(n_jobs=1)) == 4


@pytest.mark.parametrize("smoothing, expected", [(0.0, 0.0), (0.3, 0.3), ("auto", 0.025)])
def test_resolve_smoothing(smoothing, expected):
    cfg = ALNConfig(smoothing=smoothing)
    assert resolve_smoothing(cfg, 2.5) == pytest.approx(expected)


@pytest.mark.parametrize("smoothing", [-0.1, "wide"])
def test_resolve_smoothing_rejects_bad_values(smoothing):
    with pytest.raises(ValueError):
        resolve_smoothing(ALNConfig(smoothing=smoothing), 1.0)
