"""Standalone prediction from an exported ALN decision tree."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np

from .data import ensure_numpy
from .model import FlattenedTree


class DTreePredictor:
    """Lightweight predictor that depends only on a serialised tree."""

    def __init__(self, tree: FlattenedTree, *, device: str = "cpu") -> None:
        self._tree = tree
        self.device = device

    @classmethod
    def from_json(cls, path: str | Path, *, device: str = "cpu") -> "DTreePredictor":
        payload = json.loads(Path(path).read_text())
        return cls(FlattenedTree.from_dict(payload), device=device)

    def to_json(self, path: str | Path) -> None:
        Path(path).write_text(json.dumps(self._tree.to_dict()))

    def predict(self, X: np.ndarray) -> np.ndarray:
        X_array = ensure_numpy(X)
        if X_array.ndim == 1:
            X_array = X_array.reshape(1, -1)
        return self._tree.predict(X_array, device=self.device)

    @property
    def tree(self) -> FlattenedTree:
        return self._tree


def load_predictor(payload: dict[str, Any]) -> DTreePredictor:
    return DTreePredictor(FlattenedTree.from_dict(payload))
