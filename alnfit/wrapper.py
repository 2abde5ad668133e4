"""scikit-learn wrapper for ALN fitting."""

from __future__ import annotations

from typing import Optional

import numpy as np
from sklearn.base import BaseEstimator, RegressorMixin

from .config import ALNConfig, PhaseSettings
from .data import ensure_numpy
from .fitter import ALNFit


class ALNRegressor(BaseEstimator, RegressorMixin):
    """scikit-learn compatible estimator wrapping :class:`ALNFit`."""

    def __init__(
        self,
        *,
        n_trees: int = 1,
        f_limit: float = 1.4,
        f_limit_mode: str = "fixed",
        learning_rate: float = 0.15,
        epochs_per_round: int = 100,
        max_iterations: int = 40,
        split_operator: str = "auto",
        smoothing: float | str = 0.0,
        estimate_noise: bool = True,
        noise_variance: Optional[float] = None,
        train_average: bool = False,
        n_jobs: int = 1,
        random_state: Optional[int] = 42,
        device: str = "cpu",
    ) -> None:
        self.n_trees = n_trees
        self.f_limit = f_limit
        self.f_limit_mode = f_limit_mode
        self.learning_rate = learning_rate
        self.epochs_per_round = epochs_per_round
        self.max_iterations = max_iterations
        self.split_operator = split_operator
        self.smoothing = smoothing
        self.estimate_noise = estimate_noise
        self.noise_variance = noise_variance
        self.train_average = train_average
        self.n_jobs = n_jobs
        self.random_state = random_state
        self.device = device
        self._fitter: Optional[ALNFit] = None

    def fit(self, X: np.ndarray, y: np.ndarray) -> "ALNRegressor":
        """Fit the estimator.

        Parameters
        ----------
        X: np.ndarray
            Feature matrix of shape (n_samples, n_features).
        y: np.ndarray
            Targets of shape (n_samples,).
        """
        config = ALNConfig(
            n_trees=self.n_trees,
            f_limit=self.f_limit,
            f_limit_mode=self.f_limit_mode,  # type: ignore[arg-type]
            split_operator=self.split_operator,  # type: ignore[arg-type]
            smoothing=self.smoothing,  # type: ignore[arg-type]
            approximate=PhaseSettings(
                learning_rate=self.learning_rate,
                epochs_per_round=self.epochs_per_round,
                max_iterations=self.max_iterations,
            ),
            estimate_noise=self.estimate_noise,
            train_average=self.train_average,
            n_jobs=self.n_jobs,
            random_state=self.random_state,
            device=self.device,
        )
        fitter = ALNFit(config)
        fitter.fit(ensure_numpy(X), ensure_numpy(y), noise_variance=self.noise_variance)
        self._fitter = fitter
        self.n_features_in_ = fitter.linear_start.weights.shape[0]
        self.report_ = fitter.report
        self.feature_importances_ = fitter.report.importance
        return self

    def predict(self, X: np.ndarray) -> np.ndarray:
        if self._fitter is None:
            raise RuntimeError("Estimator has not been fitted")
        return self._fitter.predict(ensure_numpy(X))

    def get_model(self) -> ALNFit:
        if self._fitter is None:
            raise RuntimeError("Estimator has not been fitted")
        return self._fitter
