"""mlgraph: a compute-graph engine for tensor operations.

Build a graph with ``GraphBuilder``, freeze it with ``build``, then ``await
graph.compute(inputs, outputs)`` as many times as needed and ``dispose()`` it
to hand every backend allocation back.
"""

from .context import Context, create_context, default_context
from .errors import (
    ConstructionError,
    DTypeMismatch,
    DuplicateName,
    ExecutionError,
    GraphDisposed,
    GraphError,
    IncompatibleShape,
    InvalidOption,
    InvalidResource,
    MissingInputs,
    MissingOutputs,
    OutputMismatch,
    ShapeMismatch,
    ShapeUnresolved,
    UnknownName,
    UnknownOperand,
)
from .graph import CompiledGraph
from .ir import DType, Dynamic, GraphBuilder, Operand, OperandDescriptor, float16, float32, int8, int32, uint8, uint32
from .runtime import BackendConfig, MemoryConfig, MemoryInfo, NumpyBackend, TensorBinding

__all__ = [
    "Context",
    "create_context",
    "default_context",
    "CompiledGraph",
    "GraphBuilder",
    "DType",
    "Dynamic",
    "Operand",
    "OperandDescriptor",
    "float16",
    "float32",
    "int8",
    "int32",
    "uint8",
    "uint32",
    "BackendConfig",
    "MemoryConfig",
    "MemoryInfo",
    "NumpyBackend",
    "TensorBinding",
    "GraphError",
    "ConstructionError",
    "ExecutionError",
    "DuplicateName",
    "ShapeMismatch",
    "IncompatibleShape",
    "DTypeMismatch",
    "UnknownOperand",
    "InvalidOption",
    "MissingInputs",
    "MissingOutputs",
    "UnknownName",
    "ShapeUnresolved",
    "InvalidResource",
    "OutputMismatch",
    "GraphDisposed",
]
