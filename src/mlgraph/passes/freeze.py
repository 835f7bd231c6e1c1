from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from mlgraph.errors import InvalidOption, UnknownOperand
from mlgraph.ir.operand import InputOrigin, Operand, OpNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Topology:
    """Immutable snapshot of the subgraph feeding a fixed set of outputs."""

    inputs: Mapping[str, Operand]
    outputs: Mapping[str, Operand]
    nodes: tuple[OpNode, ...]
    constants: tuple[Operand, ...]


def reachable(targets: Iterable[Operand]) -> tuple[list[OpNode], list[Operand]]:
    """Walk backward from ``targets``.

    Returns the producing nodes and the leaf operands (inputs and constants)
    that the targets depend on, each deduplicated.
    """
    nodes: dict[int, OpNode] = {}
    leaves: dict[int, Operand] = {}
    stack = list(targets)
    while stack:
        t = stack.pop()
        node = t.producer
        if node is None:
            leaves[t.id] = t
        elif node.id not in nodes:
            nodes[node.id] = node
            stack.extend(node.inputs)
    return list(nodes.values()), list(leaves.values())


def ancestors(order: Iterable[OpNode], targets: Iterable[Operand]) -> list[OpNode]:
    """The minimal subgraph for ``targets``, in the order given by ``order``."""
    needed = {node.id for node in reachable(targets)[0]}
    return [node for node in order if node.id in needed]


@dataclass(slots=True)
class FreezePass:
    """Turn a requested output set into a topologically ordered Topology.

    Operands are only ever created from operands that already exist, so node
    ids (handed out in creation order) are a valid topological order; sorting
    the reachable nodes by id keeps independent branches in creation order.
    """

    token: int

    def run(self, outputs: Mapping[str, Operand]) -> Topology:
        if not isinstance(outputs, Mapping) or not outputs:
            raise InvalidOption("build() needs a non-empty mapping of output name -> Operand")
        for name, t in outputs.items():
            if not isinstance(name, str) or not name:
                raise InvalidOption(f"Output names must be non-empty strings, got {name!r}")
            if not isinstance(t, Operand):
                raise UnknownOperand(f"Output {name!r} is not an Operand: {type(t).__name__}")
            if t.builder != self.token:
                raise UnknownOperand(f"Output {name!r} was created by a different builder")

        nodes, leaves = reachable(outputs.values())
        nodes.sort(key=lambda n: n.id)
        leaves.sort(key=lambda t: t.id)

        inputs = {t.origin.name: t for t in leaves if isinstance(t.origin, InputOrigin)}
        constants = tuple(t for t in leaves if t.is_constant)
        logger.debug(
            "frozen %d nodes; inputs=%s, constants=%d",
            len(nodes),
            list(inputs),
            len(constants),
        )
        return Topology(
            inputs=MappingProxyType(inputs),
            outputs=MappingProxyType(dict(outputs)),
            nodes=tuple(nodes),
            constants=constants,
        )
