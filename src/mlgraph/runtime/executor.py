"""Executor: validates one compute call and runs its minimal subgraph.

Validation and shape resolution happen on the caller's thread, before any
backend work. Execution is handed to the backend's worker pool; the awaiting
caller resumes once every requested output has been written.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from mlgraph.ir.operand import ConstantOrigin, Operand, OpNode
from mlgraph.passes.freeze import ancestors
from mlgraph.passes.shapes import ShapeResolver
from mlgraph.runtime.bindings import BoundInput, bind_inputs, check_output, select_outputs

if TYPE_CHECKING:
    from mlgraph.passes.freeze import Topology
    from mlgraph.runtime.backend import Backend, DeviceTensor
    from mlgraph.runtime.resources import CallScope, ResourceManager

logger = logging.getLogger(__name__)


class KernelContractError(RuntimeError):
    """A backend returned results that disagree with the resolved shapes."""


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    """Everything one compute call needs, fixed before dispatch.

    Attributes:
        feeds: Bound inputs by operand id.
        targets: Requested output name -> (operand, caller buffer).
        nodes: Minimal subgraph, in compiled topological order.
        shapes: Resolved shape of every operand the call touches, by id.
    """

    feeds: Mapping[int, BoundInput]
    targets: Mapping[str, tuple[Operand, np.ndarray]]
    nodes: tuple[OpNode, ...]
    shapes: Mapping[int, tuple[int, ...]]


class Executor:
    def __init__(self, topology: Topology, backend: Backend, resources: ResourceManager) -> None:
        self._topology = topology
        self._backend = backend
        self._resources = resources

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def prepare(self, inputs: object, outputs: object) -> ExecutionPlan:
        """Run every binding check and resolve shapes for this call."""
        bound = bind_inputs(self._topology.inputs, inputs)
        requested = select_outputs(self._topology.outputs, outputs)

        feeds = {b.operand.id: b for b in bound.values()}
        nodes = tuple(ancestors(self._topology.nodes, requested.values()))
        shapes = ShapeResolver({i: b.shape for i, b in feeds.items()}).run(nodes)
        for operand_id, b in feeds.items():
            shapes[operand_id] = b.shape

        targets: dict[str, tuple[Operand, np.ndarray]] = {}
        for name, operand in requested.items():
            shape = shapes.get(operand.id, operand.shape)
            targets[name] = (operand, check_output(name, operand, shape, outputs[name]))
        return ExecutionPlan(feeds=feeds, targets=targets, nodes=nodes, shapes=shapes)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run(self, inputs: object, outputs: object) -> dict[str, np.ndarray]:
        plan = self.prepare(inputs, outputs)
        await asyncio.wrap_future(self._backend.submit(self.execute, plan))
        return {name: buffer for name, (_, buffer) in plan.targets.items()}

    def _fetch(self, operand: Operand, plan: ExecutionPlan, values: dict[int, DeviceTensor], scope: CallScope) -> DeviceTensor:
        tensor = values.get(operand.id)
        if tensor is not None:
            return tensor
        if isinstance(operand.origin, ConstantOrigin):
            tensor = self._resources.retain(operand.id, operand.origin.data, f"constant:%{operand.id}")
        else:
            feed = plan.feeds[operand.id]
            tensor = scope.track(self._backend.upload(feed.array, f"input:{operand.origin.name}"))
        values[operand.id] = tensor
        return tensor

    def execute(self, plan: ExecutionPlan) -> None:
        """Run ``plan`` synchronously; intermediates never outlive the call.

        A value is released as soon as its last consumer in the plan has run,
        unless it is a requested output or a retained constant.
        """
        remaining: Counter[int] = Counter()
        for node in plan.nodes:
            for t in node.inputs:
                remaining[t.id] += 1
        for operand, _ in plan.targets.values():
            remaining[operand.id] += 1

        with self._resources.call_scope() as scope:
            values: dict[int, DeviceTensor] = {}
            for node in plan.nodes:
                args = [self._fetch(t, plan, values, scope) for t in node.inputs]
                results = self._backend.execute(node.kind, args, node.options)
                for t in results:
                    scope.track(t)
                self._check_results(node, results, plan)

                for operand, tensor in zip(node.outputs, results):
                    values[operand.id] = tensor
                    if remaining[operand.id] == 0:
                        scope.release(tensor)
                for t in node.inputs:
                    remaining[t.id] -= 1
                    if remaining[t.id] == 0 and not t.is_constant:
                        scope.release(values[t.id])
                logger.debug("%s#%d done, %d tensors live in call", node.kind, node.id, len(scope))

            for name, (operand, buffer) in plan.targets.items():
                self._backend.download(self._fetch(operand, plan, values, scope), buffer)

    @staticmethod
    def _check_results(node: OpNode, results: list[DeviceTensor], plan: ExecutionPlan) -> None:
        if len(results) != len(node.outputs):
            raise KernelContractError(
                f"{node.kind}#{node.id}: backend returned {len(results)} results, expected {len(node.outputs)}"
            )
        for operand, tensor in zip(node.outputs, results):
            expected = plan.shapes[operand.id]
            if tensor.shape != tuple(expected) or tensor.dtype != operand.dtype.numpy:
                raise KernelContractError(
                    f"{node.kind}#{node.id}: backend returned {tensor.dtype}{list(tensor.shape)}, "
                    f"expected {operand.dtype}{list(expected)}"
                )
