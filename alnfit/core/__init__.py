"""Core tree structure shared by training, growth and export."""

from .tree import ALNTree, AxisConstraints, LeafNode, MinMaxNode, combine

__all__ = [
    "ALNTree",
    "AxisConstraints",
    "LeafNode",
    "MinMaxNode",
    "combine",
]
