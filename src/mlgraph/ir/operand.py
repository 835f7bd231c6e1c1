from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Union

import numpy as np

from ..errors import ShapeMismatch
from .dtypes import DType, as_dtype


class _DynamicDimension:
	"""Marker for a dimension whose extent is supplied by a compute call."""

	__slots__ = ()
	_instance: _DynamicDimension | None = None

	def __new__(cls) -> _DynamicDimension:
		if cls._instance is None:
			cls._instance = super().__new__(cls)
		return cls._instance

	def __repr__(self) -> str:
		return "Dynamic"

	def __reduce__(self) -> str:
		return "Dynamic"


Dynamic = _DynamicDimension()

Dimension = Union[int, _DynamicDimension]
Shape = tuple[Dimension, ...]


def as_shape(dims: Iterable[object]) -> Shape:
	"""Normalize a dimension sequence, rejecting numeric sentinels like -1."""

	if isinstance(dims, (str, bytes)) or not isinstance(dims, Iterable):
		raise ShapeMismatch(f"Dimensions must be a sequence, got {dims!r}")
	out: list[Dimension] = []
	for d in dims:
		if d is Dynamic:
			out.append(Dynamic)
			continue
		if isinstance(d, bool) or not isinstance(d, (int, np.integer)):
			raise ShapeMismatch(f"Invalid dimension {d!r} in {dims!r}")
		if d < 0:
			raise ShapeMismatch(
				f"Negative dimension {d} in {list(dims)!r}; use Dynamic for extents known only at compute time"
			)
		out.append(int(d))
	return tuple(out)


def is_static(shape: Shape) -> bool:
	return all(d is not Dynamic for d in shape)


def numel(shape: Shape) -> int:
	if not is_static(shape):
		raise ShapeMismatch(f"Cannot count elements of unresolved shape {format_shape(shape)}")
	return math.prod(shape)


def format_shape(shape: Shape) -> str:
	return "[" + ", ".join("?" if d is Dynamic else str(d) for d in shape) + "]"


@dataclass(frozen=True, slots=True)
class OperandDescriptor:
	"""Element type and dimensions of an operand."""

	dtype: DType
	dimensions: Shape

	def __post_init__(self) -> None:
		object.__setattr__(self, "dtype", as_dtype(self.dtype))
		object.__setattr__(self, "dimensions", as_shape(self.dimensions))

	@classmethod
	def coerce(cls, value: OperandDescriptor | Mapping[str, object]) -> OperandDescriptor:
		"""Accept a descriptor or a ``{"dtype"|"type", "dimensions"|"shape"}`` mapping."""

		if isinstance(value, cls):
			return value
		if not isinstance(value, Mapping):
			raise ShapeMismatch(f"Expected an operand descriptor, got {type(value).__name__}")
		dtype = value.get("dtype", value.get("type"))
		dims = value.get("dimensions", value.get("shape"))
		if dtype is None or dims is None:
			raise ShapeMismatch(f"Descriptor needs a dtype and dimensions, got {dict(value)!r}")
		return cls(dtype, dims)

	@property
	def byte_length(self) -> int:
		return numel(self.dimensions) * self.dtype.itemsize


# =============================================================================
# Provenance
# =============================================================================


@dataclass(frozen=True, slots=True)
class InputOrigin:
	name: str


@dataclass(frozen=True, slots=True, eq=False)
class ConstantOrigin:
	"""Owns a read-only copy of the buffer given to ``GraphBuilder.constant``."""

	data: np.ndarray


@dataclass(frozen=True, slots=True, eq=False)
class OpResultOrigin:
	node: OpNode
	index: int


Origin = Union[InputOrigin, ConstantOrigin, OpResultOrigin]


@dataclass(slots=True, eq=False)
class OpNode:
	"""One application of a catalog operation.

	``outputs`` is attached by the builder right after the node is created and
	is not reassigned afterwards.
	"""

	id: int
	kind: str
	inputs: tuple[Operand, ...]
	options: Mapping[str, object]
	outputs: tuple[Operand, ...] = ()

	def __repr__(self) -> str:  # pragma: no cover
		return f"OpNode(id={self.id}, kind={self.kind!r}, inputs={[t.id for t in self.inputs]})"


@dataclass(frozen=True, slots=True, eq=False)
class Operand:
	"""A typed, shaped value in the graph.

	Operands are SSA values: each has a single origin and is never mutated.
	``builder`` is the token of the builder that created it.
	"""

	id: int
	dtype: DType
	shape: Shape
	origin: Origin
	builder: int

	@property
	def rank(self) -> int:
		return len(self.shape)

	@property
	def descriptor(self) -> OperandDescriptor:
		return OperandDescriptor(self.dtype, self.shape)

	@property
	def is_input(self) -> bool:
		return isinstance(self.origin, InputOrigin)

	@property
	def is_constant(self) -> bool:
		return isinstance(self.origin, ConstantOrigin)

	@property
	def producer(self) -> OpNode | None:
		if isinstance(self.origin, OpResultOrigin):
			return self.origin.node
		return None

	def __repr__(self) -> str:  # pragma: no cover
		kind = type(self.origin).__name__.removesuffix("Origin")
		return f"Operand(id={self.id}, {kind}, shape={format_shape(self.shape)}, dtype={self.dtype})"
