from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

import numpy as np

from ..errors import DTypeMismatch, DuplicateName, InvalidOption, ShapeMismatch, UnknownOperand
from . import recurrent
from .op import get_spec
from .operand import (
	ConstantOrigin,
	InputOrigin,
	Operand,
	OperandDescriptor,
	OpNode,
	OpResultOrigin,
	Origin,
	Shape,
	format_shape,
	is_static,
)

if TYPE_CHECKING:
	from ..context import Context
	from ..graph import CompiledGraph
	from .dtypes import DType

logger = logging.getLogger(__name__)

_builder_tokens = itertools.count(1)


@dataclass
class GraphBuilder:
	"""Mutable session that records operands and operations.

	Shapes and dtypes are validated eagerly, when a node is created: fixed
	dimensions that can never agree fail immediately, dynamic ones are carried
	through to the result. Nodes are appended in creation order and may only
	consume operands that already exist, so the recorded graph is a DAG.

	A builder is a single-writer object. Nothing it does later affects operands
	or compiled graphs it has already handed out.
	"""

	context: Context | None = None
	name: str = "graph"
	nodes: list[OpNode] = field(default_factory=list)
	operands: list[Operand] = field(default_factory=list)
	_inputs: dict[str, Operand] = field(default_factory=dict, repr=False)
	_ids: itertools.count = field(default_factory=itertools.count, repr=False)
	_token: int = field(default_factory=lambda: next(_builder_tokens), repr=False)

	def __post_init__(self) -> None:
		if self.context is None:
			from ..context import default_context

			self.context = default_context()

	# -------------------------------------------------------------------------
	# Leaves
	# -------------------------------------------------------------------------

	def _new_operand(self, dtype: DType, shape: Shape, origin: Origin) -> Operand:
		t = Operand(id=next(self._ids), dtype=dtype, shape=shape, origin=origin, builder=self._token)
		self.operands.append(t)
		return t

	def input(self, name: str, descriptor: OperandDescriptor | Mapping[str, object]) -> Operand:
		if not isinstance(name, str) or not name:
			raise InvalidOption(f"Input name must be a non-empty string, got {name!r}")
		if name in self._inputs:
			raise DuplicateName(f"Input {name!r} is already defined in builder {self.name!r}")
		desc = OperandDescriptor.coerce(descriptor)
		t = self._new_operand(desc.dtype, desc.dimensions, InputOrigin(name))
		self._inputs[name] = t
		return t

	def constant(
		self,
		descriptor: OperandDescriptor | Mapping[str, object] | np.ndarray,
		buffer: object = None,
	) -> Operand:
		"""Create a constant holding a private copy of ``buffer``.

		``constant(array)`` takes the descriptor from the array itself.
		"""

		if buffer is None:
			if not isinstance(descriptor, np.ndarray):
				raise InvalidOption("constant() needs a buffer, or an ndarray as its only argument")
			buffer = descriptor
			descriptor = OperandDescriptor(descriptor.dtype, descriptor.shape)
		desc = OperandDescriptor.coerce(descriptor)
		if not is_static(desc.dimensions):
			raise ShapeMismatch(f"Constant shape must be fully fixed, got {format_shape(desc.dimensions)}")

		if isinstance(buffer, np.ndarray):
			if buffer.dtype != desc.dtype.numpy:
				raise DTypeMismatch(f"Constant declared {desc.dtype} but buffer holds {buffer.dtype}")
			raw = np.ascontiguousarray(buffer).tobytes()
		else:
			try:
				raw = memoryview(buffer).tobytes()
			except TypeError as e:
				raise InvalidOption(f"Constant buffer must support the buffer protocol, got {type(buffer).__name__}") from e

		if len(raw) != desc.byte_length:
			raise ShapeMismatch(
				f"Constant {format_shape(desc.dimensions)} of {desc.dtype} needs {desc.byte_length} bytes, "
				f"buffer has {len(raw)}"
			)
		# frombuffer over an immutable bytes object yields a read-only array.
		data = np.frombuffer(raw, dtype=desc.dtype.numpy).reshape(desc.dimensions)
		return self._new_operand(desc.dtype, desc.dimensions, ConstantOrigin(data))

	# -------------------------------------------------------------------------
	# Operations
	# -------------------------------------------------------------------------

	def _check_owned(self, operands: Sequence[object]) -> None:
		for t in operands:
			if not isinstance(t, Operand):
				raise UnknownOperand(f"Expected an Operand, got {type(t).__name__}")
			if t.builder != self._token:
				raise UnknownOperand(f"{t!r} was created by a different builder")

	def _add_op(self, kind: str, inputs: Sequence[Operand], **options: object) -> tuple[Operand, ...]:
		spec = get_spec(kind)
		self._check_owned(inputs)
		spec.check_arity(len(inputs))

		shapes = [t.shape for t in inputs]
		opts = spec.normalize(shapes, options)
		results = spec.infer(shapes, [t.dtype for t in inputs], opts)

		node = OpNode(id=next(self._ids), kind=kind, inputs=tuple(inputs), options=MappingProxyType(opts))
		node.outputs = tuple(
			self._new_operand(dtype, shape, OpResultOrigin(node, i)) for i, (shape, dtype) in enumerate(results)
		)
		self.nodes.append(node)
		logger.debug(
			"%s: %s(%s) -> %s",
			self.name,
			kind,
			", ".join(format_shape(s) for s in shapes),
			", ".join(format_shape(t.shape) for t in node.outputs),
		)
		return node.outputs

	def _one(self, kind: str, *inputs: Operand, **options: object) -> Operand:
		return self._add_op(kind, inputs, **options)[0]

	def add(self, a: Operand, b: Operand) -> Operand:
		return self._one("add", a, b)

	def sub(self, a: Operand, b: Operand) -> Operand:
		return self._one("sub", a, b)

	def mul(self, a: Operand, b: Operand) -> Operand:
		return self._one("mul", a, b)

	def div(self, a: Operand, b: Operand) -> Operand:
		return self._one("div", a, b)

	def max(self, a: Operand, b: Operand) -> Operand:
		return self._one("max", a, b)

	def min(self, a: Operand, b: Operand) -> Operand:
		return self._one("min", a, b)

	def pow(self, a: Operand, b: Operand) -> Operand:
		return self._one("pow", a, b)

	def abs(self, x: Operand) -> Operand:
		return self._one("abs", x)

	def neg(self, x: Operand) -> Operand:
		return self._one("neg", x)

	def exp(self, x: Operand) -> Operand:
		return self._one("exp", x)

	def sqrt(self, x: Operand) -> Operand:
		return self._one("sqrt", x)

	def relu(self, x: Operand) -> Operand:
		return self._one("relu", x)

	def sigmoid(self, x: Operand) -> Operand:
		return self._one("sigmoid", x)

	def tanh(self, x: Operand) -> Operand:
		return self._one("tanh", x)

	def matmul(self, a: Operand, b: Operand) -> Operand:
		return self._one("matmul", a, b)

	def transpose(self, x: Operand, permutation: Sequence[int] | None = None) -> Operand:
		return self._one("transpose", x, permutation=permutation)

	def reshape(self, x: Operand, new_shape: Sequence[int]) -> Operand:
		return self._one("reshape", x, new_shape=new_shape)

	def squeeze(self, x: Operand, axes: Sequence[int] | None = None) -> Operand:
		return self._one("squeeze", x, axes=axes)

	def unsqueeze(self, x: Operand, axes: Sequence[int]) -> Operand:
		return self._one("unsqueeze", x, axes=axes)

	def slice(self, x: Operand, starts: Sequence[int], sizes: Sequence[int]) -> Operand:
		return self._one("slice", x, starts=starts, sizes=sizes)

	def concat(self, inputs: Sequence[Operand], axis: int) -> Operand:
		if not inputs:
			raise InvalidOption("concat needs at least one input")
		return self._add_op("concat", list(inputs), axis=axis)[0]

	def split(self, x: Operand, splits: int | Sequence[int], axis: int = 0) -> tuple[Operand, ...]:
		return self._add_op("split", [x], splits=splits, axis=axis)

	def gru_cell(
		self,
		input: Operand,
		weight: Operand,
		recurrent_weight: Operand,
		hidden_state: Operand,
		hidden_size: int,
		*,
		bias: Operand | None = None,
		recurrent_bias: Operand | None = None,
		reset_after: bool = True,
		layout: str = "zrn",
	) -> Operand:
		return recurrent.gru_cell(
			self,
			input,
			weight,
			recurrent_weight,
			hidden_state,
			hidden_size,
			bias=bias,
			recurrent_bias=recurrent_bias,
			reset_after=reset_after,
			layout=layout,
		)

	def gru(
		self,
		input: Operand,
		weight: Operand,
		recurrent_weight: Operand,
		steps: int,
		hidden_size: int,
		*,
		bias: Operand | None = None,
		recurrent_bias: Operand | None = None,
		initial_hidden_state: Operand | None = None,
		reset_after: bool = True,
		return_sequence: bool = False,
		direction: str = "forward",
		layout: str = "zrn",
	) -> tuple[Operand, ...]:
		return recurrent.gru(
			self,
			input,
			weight,
			recurrent_weight,
			steps,
			hidden_size,
			bias=bias,
			recurrent_bias=recurrent_bias,
			initial_hidden_state=initial_hidden_state,
			reset_after=reset_after,
			return_sequence=return_sequence,
			direction=direction,
			layout=layout,
		)

	# -------------------------------------------------------------------------
	# Compilation
	# -------------------------------------------------------------------------

	def build(self, outputs: Mapping[str, Operand]) -> CompiledGraph:
		"""Freeze the subgraph reachable from ``outputs`` into a CompiledGraph."""

		from ..graph import CompiledGraph
		from ..passes.freeze import FreezePass

		topology = FreezePass(token=self._token).run(outputs)
		logger.info(
			"%s: built graph with %d inputs, %d outputs, %d nodes",
			self.name,
			len(topology.inputs),
			len(topology.outputs),
			len(topology.nodes),
		)
		return CompiledGraph(topology, self.context)

	def summary(self) -> str:
		lines: list[str] = [f"GraphBuilder(name={self.name!r}, nodes={len(self.nodes)}, operands={len(self.operands)})"]
		for node in self.nodes:
			ins = ", ".join(f"%{t.id}:{format_shape(t.shape)}" for t in node.inputs)
			outs = ", ".join(f"%{t.id}:{format_shape(t.shape)}" for t in node.outputs)
			lines.append(f"- #{node.id}: {node.kind}({ins}) -> {outs}")
		return "\n".join(lines)
