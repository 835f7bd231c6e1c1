from .freeze import FreezePass, Topology, ancestors, reachable
from .shapes import ShapeResolver

__all__ = [
    "FreezePass",
    "Topology",
    "ancestors",
    "reachable",
    "ShapeResolver",
]
