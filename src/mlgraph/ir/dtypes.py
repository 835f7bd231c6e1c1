from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..errors import DTypeMismatch


@dataclass(frozen=True, slots=True)
class DType:
	"""Element type of an operand.

	A dtype is fixed per operand and never coerced: every elementwise op
	requires its inputs to share one dtype.
	"""

	name: str
	itemsize: int

	@property
	def numpy(self) -> np.dtype:
		return np.dtype(self.name)

	def __str__(self) -> str:  # pragma: no cover
		return self.name


float32 = DType("float32", 4)
float16 = DType("float16", 2)
int32 = DType("int32", 4)
uint32 = DType("uint32", 4)
int8 = DType("int8", 1)
uint8 = DType("uint8", 1)

_BY_NAME: dict[str, DType] = {d.name: d for d in (float32, float16, int32, uint32, int8, uint8)}


def as_dtype(value: DType | str | np.dtype) -> DType:
	if isinstance(value, DType):
		return value
	try:
		name = np.dtype(value).name if not isinstance(value, str) else value
	except TypeError as e:
		raise DTypeMismatch(f"Unsupported dtype: {value!r}") from e
	if name not in _BY_NAME:
		raise DTypeMismatch(f"Unsupported dtype: {value!r} (expected one of {sorted(_BY_NAME)})")
	return _BY_NAME[name]
