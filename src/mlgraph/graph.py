from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

import numpy as np

from mlgraph.errors import GraphDisposed
from mlgraph.ir.operand import Operand, OpNode, format_shape
from mlgraph.runtime.executor import Executor
from mlgraph.runtime.resources import ResourceManager

if TYPE_CHECKING:
    from mlgraph.context import Context
    from mlgraph.passes.freeze import Topology

logger = logging.getLogger(__name__)


class CompiledGraph:
    """Immutable, topologically ordered graph ready to be computed.

    A compiled graph shares no mutable state with the builder that produced
    it: operands and nodes are frozen, constant data are private read-only
    copies, and the name mappings are read-only views.

    Example:
        >>> graph = builder.build({"c": c})
        >>> await graph.compute({"a": a, "b": b}, {"c": np.empty(4, np.float32)})
        >>> graph.dispose()
    """

    __slots__ = ("_topology", "_context", "_resources", "_executor")

    def __init__(self, topology: Topology, context: Context) -> None:
        self._topology = topology
        self._context = context
        self._resources = ResourceManager(context.backend, owner=f"graph@{id(self):x}")
        self._executor = Executor(topology, context.backend, self._resources)

    @property
    def inputs(self) -> Mapping[str, Operand]:
        return self._topology.inputs

    @property
    def outputs(self) -> Mapping[str, Operand]:
        return self._topology.outputs

    @property
    def nodes(self) -> tuple[OpNode, ...]:
        return self._topology.nodes

    @property
    def constants(self) -> tuple[Operand, ...]:
        return self._topology.constants

    @property
    def context(self) -> Context:
        return self._context

    @property
    def disposed(self) -> bool:
        return self._resources.disposed

    async def compute(
        self,
        inputs: Mapping[str, object] | None = None,
        outputs: Mapping[str, np.ndarray] | None = None,
    ) -> dict[str, np.ndarray]:
        """Evaluate the requested outputs into caller-owned buffers.

        Args:
            inputs: Input name -> ndarray, ``TensorBinding`` or
                ``{"resource": ndarray, "dimensions": [...]}``.
            outputs: Output name -> writable ndarray. May name any non-empty
                subset of the graph outputs; only their ancestors run.

        Returns:
            A new dict holding exactly the requested names, mapped to the
            buffers that were written.

        Raises:
            ExecutionError: If a binding is invalid (see ``runtime.bindings``).
            GraphDisposed: If ``dispose()`` was already called.
        """
        if self.disposed:
            raise GraphDisposed("Cannot compute a disposed graph")
        logger.debug("compute: inputs=%s outputs=%s", _keys(inputs), _keys(outputs))
        return await self._executor.run(inputs, outputs)

    def dispose(self) -> None:
        """Release every backend allocation attributed to this graph."""
        self._resources.dispose()

    def __enter__(self) -> CompiledGraph:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    def summary(self) -> str:
        ins = ", ".join(f"{n}:{format_shape(t.shape)}" for n, t in self.inputs.items())
        outs = ", ".join(f"{n}:{format_shape(t.shape)}" for n, t in self.outputs.items())
        lines = [f"CompiledGraph(inputs=[{ins}], outputs=[{outs}], nodes={len(self.nodes)})"]
        for node in self.nodes:
            args = ", ".join(f"%{t.id}" for t in node.inputs)
            results = ", ".join(f"%{t.id}:{format_shape(t.shape)}" for t in node.outputs)
            lines.append(f"- {node.kind}({args}) -> {results}")
        return "\n".join(lines)


def _keys(mapping: object) -> object:
    return list(mapping) if isinstance(mapping, Mapping) else mapping
