"""alnfit: adaptive logic network fitting with noise-driven growth."""

from .config import ALNConfig, PhaseSettings
from .fitter import ALNFit
from .model import DepthExceededError, FlattenedTree
from .predictor import DTreePredictor

__all__ = ["ALNConfig", "ALNFit", "DTreePredictor", "DepthExceededError", "FlattenedTree", "PhaseSettings"]
