"""Operation catalog: shape/dtype rules for every operation kind.

Each rule runs twice: at construction time on the declared shapes (which may
contain ``Dynamic``), and at compute time on fully resolved shapes. A rule
defers what it cannot know and raises ``IncompatibleShape`` only for fixed
dimensions that can never agree.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import ClassVar

from ..errors import DTypeMismatch, IncompatibleShape, InvalidOption
from .dtypes import DType, float16, float32
from .operand import Dimension, Dynamic, Shape, format_shape, is_static, numel

Options = Mapping[str, object]
Result = list[tuple[Shape, DType]]

CATALOG: dict[str, OpSpec] = {}


def register(spec: OpSpec) -> OpSpec:
	if spec.kind in CATALOG:
		raise ValueError(f"Operation kind {spec.kind!r} registered twice")
	CATALOG[spec.kind] = spec
	return spec


def get_spec(kind: str) -> OpSpec:
	try:
		return CATALOG[kind]
	except KeyError:
		raise InvalidOption(f"Unknown operation kind {kind!r}") from None


# =============================================================================
# Dimension algebra
# =============================================================================


def merge_dim(a: Dimension, b: Dimension, what: str) -> Dimension:
	"""Unify two dimensions that must be equal."""

	if a is Dynamic:
		return b
	if b is Dynamic or a == b:
		return a
	raise IncompatibleShape(f"{what}: {a} != {b}")


def broadcast_shapes(a: Shape, b: Shape, what: str) -> Shape:
	"""Bidirectional (numpy-style) broadcasting over possibly dynamic shapes."""

	rank = max(len(a), len(b))
	a = (1,) * (rank - len(a)) + a
	b = (1,) * (rank - len(b)) + b
	out: list[Dimension] = []
	for da, db in zip(a, b):
		if da == 1:
			out.append(db)
		elif db == 1:
			out.append(da)
		elif da is Dynamic and db is Dynamic:
			out.append(Dynamic)
		else:
			# A dynamic extent facing a fixed n > 1 can only be 1 or n.
			out.append(merge_dim(da, db, f"{what} cannot broadcast {format_shape(a)} with {format_shape(b)}"))
	return tuple(out)


def _axis(axis: object, rank: int, kind: str) -> int:
	if isinstance(axis, bool) or not isinstance(axis, int):
		raise InvalidOption(f"{kind}: axis must be an int, got {axis!r}")
	if not -rank <= axis < rank:
		raise InvalidOption(f"{kind}: axis {axis} out of range for rank {rank}")
	return axis % rank


def _int_list(value: object, kind: str, name: str) -> tuple[int, ...]:
	if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
		raise InvalidOption(f"{kind}: {name} must be a sequence of ints, got {value!r}")
	for v in value:
		if isinstance(v, bool) or not isinstance(v, int):
			raise InvalidOption(f"{kind}: {name} must contain ints, got {value!r}")
	return tuple(value)


# =============================================================================
# Catalog entries
# =============================================================================


class OpSpec:
	"""Base catalog entry.

	``normalize`` validates options against the declared input shapes once, at
	construction time, and returns the canonical options stored on the node.
	``infer`` maps input shapes/dtypes to output shapes/dtypes.
	"""

	kind: str
	min_inputs: ClassVar[int] = 1
	max_inputs: ClassVar[int | None] = 1

	def check_arity(self, count: int) -> None:
		hi = self.max_inputs
		if count < self.min_inputs or (hi is not None and count > hi):
			expected = str(self.min_inputs) if hi == self.min_inputs else f"{self.min_inputs}..{hi or 'n'}"
			raise InvalidOption(f"{self.kind} expects {expected} inputs, got {count}")

	def normalize(self, shapes: Sequence[Shape], options: Options) -> dict[str, object]:
		return dict(options)

	def num_outputs(self, options: Options) -> int:
		return 1

	def infer(self, shapes: Sequence[Shape], dtypes: Sequence[DType], options: Options) -> Result:
		raise NotImplementedError

	def _common_dtype(self, dtypes: Sequence[DType]) -> DType:
		first = dtypes[0]
		for d in dtypes[1:]:
			if d != first:
				raise DTypeMismatch(f"{self.kind} dtype mismatch: {first} vs {d}")
		return first


class Binary(OpSpec):
	"""Elementwise binary op with bidirectional broadcasting."""

	min_inputs = 2
	max_inputs = 2

	def __init__(self, kind: str) -> None:
		self.kind = kind

	def infer(self, shapes, dtypes, options):
		dtype = self._common_dtype(dtypes)
		return [(broadcast_shapes(shapes[0], shapes[1], self.kind), dtype)]


class Unary(OpSpec):
	def __init__(self, kind: str, *, float_only: bool = False) -> None:
		self.kind = kind
		self.float_only = float_only

	def infer(self, shapes, dtypes, options):
		if self.float_only and dtypes[0] not in (float32, float16):
			raise DTypeMismatch(f"{self.kind} requires a floating point input, got {dtypes[0]}")
		return [(shapes[0], dtypes[0])]


class MatMul(OpSpec):
	"""(..., M, K) @ (..., K, N) -> (..., M, N) with broadcast batch dims."""

	kind = "matmul"
	min_inputs = 2
	max_inputs = 2

	def infer(self, shapes, dtypes, options):
		dtype = self._common_dtype(dtypes)
		a, b = shapes
		if len(a) < 2 or len(b) < 2:
			raise IncompatibleShape(
				f"matmul requires rank >= 2 inputs, got {format_shape(a)} and {format_shape(b)}"
			)
		merge_dim(a[-1], b[-2], "matmul inner dimensions differ")
		batch = broadcast_shapes(a[:-2], b[:-2], "matmul batch")
		return [(batch + (a[-2], b[-1]), dtype)]


class Transpose(OpSpec):
	kind = "transpose"

	def normalize(self, shapes, options):
		rank = len(shapes[0])
		perm = options.get("permutation")
		if perm is None:
			perm = tuple(reversed(range(rank)))
		perm = _int_list(perm, self.kind, "permutation")
		if sorted(perm) != list(range(rank)):
			raise InvalidOption(f"transpose: {list(perm)} is not a permutation of rank {rank}")
		return {"permutation": perm}

	def infer(self, shapes, dtypes, options):
		x = shapes[0]
		perm = options["permutation"]
		if len(perm) != len(x):
			raise IncompatibleShape(f"transpose: permutation {list(perm)} does not match rank {len(x)}")
		return [(tuple(x[p] for p in perm), dtypes[0])]


class Reshape(OpSpec):
	kind = "reshape"

	def normalize(self, shapes, options):
		new_shape = _int_list(options.get("new_shape"), self.kind, "new_shape")
		if any(d < 0 for d in new_shape):
			raise InvalidOption(f"reshape: negative extent in {list(new_shape)}")
		return {"new_shape": new_shape}

	def infer(self, shapes, dtypes, options):
		x = shapes[0]
		new_shape = tuple(options["new_shape"])
		if is_static(x) and numel(x) != numel(new_shape):
			raise IncompatibleShape(
				f"reshape: cannot view {format_shape(x)} as {format_shape(new_shape)}"
			)
		return [(new_shape, dtypes[0])]


class Squeeze(OpSpec):
	kind = "squeeze"

	def normalize(self, shapes, options):
		x = shapes[0]
		axes = options.get("axes")
		if axes is None:
			# Only statically known unit dims; a dynamic axis never changes rank later.
			axes = tuple(i for i, d in enumerate(x) if d == 1)
		axes = tuple(sorted({_axis(a, len(x), self.kind) for a in _int_list(axes, self.kind, "axes")}))
		return {"axes": axes}

	def infer(self, shapes, dtypes, options):
		x = shapes[0]
		axes = options["axes"]
		for a in axes:
			if a >= len(x):
				raise IncompatibleShape(f"squeeze: axis {a} out of range for {format_shape(x)}")
			merge_dim(x[a], 1, f"squeeze: axis {a} of {format_shape(x)} is not 1")
		return [(tuple(d for i, d in enumerate(x) if i not in axes), dtypes[0])]


class Unsqueeze(OpSpec):
	kind = "unsqueeze"

	def normalize(self, shapes, options):
		axes = _int_list(options.get("axes", ()), self.kind, "axes")
		rank = len(shapes[0]) + len(axes)
		norm = tuple(sorted({_axis(a, rank, self.kind) for a in axes}))
		if len(norm) != len(axes):
			raise InvalidOption(f"unsqueeze: repeated axes in {list(axes)}")
		return {"axes": norm}

	def infer(self, shapes, dtypes, options):
		rest = iter(shapes[0])
		axes = options["axes"]
		rank = len(shapes[0]) + len(axes)
		return [(tuple(1 if i in axes else next(rest) for i in range(rank)), dtypes[0])]


class Slice(OpSpec):
	kind = "slice"

	def normalize(self, shapes, options):
		rank = len(shapes[0])
		starts = _int_list(options.get("starts"), self.kind, "starts")
		sizes = _int_list(options.get("sizes"), self.kind, "sizes")
		if len(starts) != rank or len(sizes) != rank:
			raise InvalidOption(f"slice: starts/sizes must have {rank} entries")
		if any(v < 0 for v in starts + sizes):
			raise InvalidOption("slice: starts and sizes must be non-negative")
		return {"starts": starts, "sizes": sizes}

	def infer(self, shapes, dtypes, options):
		x = shapes[0]
		for axis, (d, start, size) in enumerate(zip(x, options["starts"], options["sizes"])):
			if d is not Dynamic and start + size > d:
				raise IncompatibleShape(
					f"slice: [{start}, {start + size}) exceeds extent {d} on axis {axis}"
				)
		return [(tuple(options["sizes"]), dtypes[0])]


class Concat(OpSpec):
	kind = "concat"
	max_inputs = None

	def normalize(self, shapes, options):
		return {"axis": _axis(options.get("axis", 0), len(shapes[0]), self.kind)}

	def infer(self, shapes, dtypes, options):
		dtype = self._common_dtype(dtypes)
		axis = options["axis"]
		rank = len(shapes[0])
		if any(len(s) != rank for s in shapes):
			raise IncompatibleShape(f"concat: inputs differ in rank: {[format_shape(s) for s in shapes]}")
		out = list(shapes[0])
		total: Dimension = 0
		for s in shapes:
			for i in range(rank):
				if i != axis:
					out[i] = merge_dim(out[i], s[i], f"concat: axis {i} differs")
			total = Dynamic if total is Dynamic or s[axis] is Dynamic else total + s[axis]
		out[axis] = total
		return [(tuple(out), dtype)]


class Split(OpSpec):
	"""Split one axis into equal parts (int) or explicit sizes (list)."""

	kind = "split"

	def normalize(self, shapes, options):
		x = shapes[0]
		axis = _axis(options.get("axis", 0), len(x), self.kind)
		splits = options.get("splits")
		if isinstance(splits, int) and not isinstance(splits, bool):
			if splits <= 0:
				raise InvalidOption(f"split: count must be positive, got {splits}")
		else:
			splits = _int_list(splits, self.kind, "splits")
			if not splits or any(s < 0 for s in splits):
				raise InvalidOption(f"split: invalid sizes {list(splits)}")
		return {"splits": splits, "axis": axis}

	def num_outputs(self, options):
		splits = options["splits"]
		return splits if isinstance(splits, int) else len(splits)

	def infer(self, shapes, dtypes, options):
		x = shapes[0]
		axis = options["axis"]
		splits = options["splits"]
		d = x[axis]
		if isinstance(splits, int):
			if d is Dynamic:
				sizes: list[Dimension] = [Dynamic] * splits
			elif d % splits:
				raise IncompatibleShape(f"split: extent {d} on axis {axis} is not divisible by {splits}")
			else:
				sizes = [d // splits] * splits
		else:
			merge_dim(d, sum(splits), f"split: sizes {list(splits)} do not cover axis {axis}")
			sizes = list(splits)
		return [(x[:axis] + (s,) + x[axis + 1 :], dtypes[0]) for s in sizes]


for _kind in ("add", "sub", "mul", "div", "max", "min", "pow"):
	register(Binary(_kind))
for _kind in ("abs", "neg", "relu"):
	register(Unary(_kind))
for _kind in ("exp", "sqrt", "sigmoid", "tanh"):
	register(Unary(_kind, float_only=True))
for _spec in (MatMul(), Transpose(), Reshape(), Squeeze(), Unsqueeze(), Slice(), Concat(), Split()):
	register(_spec)
