from .builder import GraphBuilder
from .dtypes import DType, as_dtype, float16, float32, int8, int32, uint8, uint32
from .op import CATALOG, OpSpec, get_spec
from .operand import (
	ConstantOrigin,
	Dimension,
	Dynamic,
	InputOrigin,
	Operand,
	OperandDescriptor,
	OpNode,
	OpResultOrigin,
	Shape,
)

__all__ = [
	"GraphBuilder",
	"DType",
	"as_dtype",
	"float16",
	"float32",
	"int8",
	"int32",
	"uint8",
	"uint32",
	"CATALOG",
	"OpSpec",
	"get_spec",
	"Dimension",
	"Dynamic",
	"Shape",
	"Operand",
	"OperandDescriptor",
	"OpNode",
	"InputOrigin",
	"ConstantOrigin",
	"OpResultOrigin",
]
