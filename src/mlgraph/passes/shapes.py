"""Resolve dynamic dimensions for one compute call.

Concrete shapes originate only from the per-call input dimensions; every other
shape is derived by replaying each node's catalog rule in topological order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from mlgraph.errors import IncompatibleShape, ShapeMismatch
from mlgraph.ir.op import get_spec, merge_dim
from mlgraph.ir.operand import Operand, OpNode, Shape, format_shape, is_static

logger = logging.getLogger(__name__)

ConcreteShape = tuple[int, ...]


@dataclass(slots=True)
class ShapeResolver:
    """Map every operand touched by ``nodes`` to a fully fixed shape.

    Attributes:
        input_shapes: Resolved dimensions of each bound input, by operand id.
    """

    input_shapes: Mapping[int, ConcreteShape]

    def shape_of(self, t: Operand, resolved: Mapping[int, ConcreteShape]) -> ConcreteShape:
        if t.id in resolved:
            return resolved[t.id]
        if t.id in self.input_shapes:
            return self.input_shapes[t.id]
        if is_static(t.shape):
            return t.shape  # type: ignore[return-value]
        raise ShapeMismatch(f"No concrete shape for {t!r}")

    def run(self, nodes: Iterable[OpNode]) -> dict[int, ConcreteShape]:
        """Resolve shapes node by node.

        Returns:
            Operand id -> concrete shape for every node output in ``nodes``.

        Raises:
            ShapeMismatch: If the supplied dimensions violate a node's rule.
        """
        resolved: dict[int, ConcreteShape] = {}
        for node in nodes:
            in_shapes = [self.shape_of(t, resolved) for t in node.inputs]
            try:
                results = get_spec(node.kind).infer(in_shapes, [t.dtype for t in node.inputs], node.options)
            except IncompatibleShape as e:
                raise ShapeMismatch(f"{node.kind}#{node.id} with inputs {_fmt(in_shapes)}: {e}") from e

            for t, (shape, _) in zip(node.outputs, results):
                self._check_declared(node, t.shape, shape)
                resolved[t.id] = shape  # type: ignore[assignment]
            logger.debug("%s#%d resolved to %s", node.kind, node.id, _fmt(resolved[t.id] for t in node.outputs))
        return resolved

    @staticmethod
    def _check_declared(node: OpNode, declared: Shape, actual: Shape) -> None:
        if not is_static(actual) or len(actual) != len(declared):
            raise ShapeMismatch(
                f"{node.kind}#{node.id} resolved to {format_shape(actual)}, declared {format_shape(declared)}"
            )
        for d, a in zip(declared, actual):
            try:
                merge_dim(d, a, "resolved dimension")
            except IncompatibleShape as e:
                raise ShapeMismatch(
                    f"{node.kind}#{node.id} resolved to {format_shape(actual)}, declared {format_shape(declared)}"
                ) from e


def _fmt(shapes: Iterable[Shape]) -> str:
    return ", ".join(format_shape(s) for s in shapes)
