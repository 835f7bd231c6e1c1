"""Validation of per-call input and output bindings.

Checks run in a fixed order and every failure is raised before any backend
work is dispatched:

1. inputs present at all              -> MissingInputs
2. no unknown input names             -> UnknownName
3. every declared input bound         -> MissingInputs
4. resource, dtype, dimensions, size  -> InvalidResource / ShapeUnresolved / ShapeMismatch
5. outputs present, no unknown names  -> MissingOutputs / UnknownName
6. output buffers fit resolved shapes -> OutputMismatch
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import numpy as np

from mlgraph.errors import (
    InvalidResource,
    MissingInputs,
    MissingOutputs,
    OutputMismatch,
    ShapeMismatch,
    ShapeUnresolved,
    UnknownName,
)
from mlgraph.ir.operand import Dynamic, Operand, as_shape, format_shape, is_static


@dataclass(frozen=True, slots=True)
class TensorBinding:
    """A runtime buffer plus the dimensions it is bound with.

    ``dimensions`` is required whenever the bound operand has a dynamic
    dimension.
    """

    resource: object
    dimensions: Sequence[int] | None = None


@dataclass(frozen=True, slots=True)
class BoundInput:
    operand: Operand
    array: np.ndarray
    shape: tuple[int, ...]


def _names(keys: object) -> str:
    return ", ".join(repr(k) for k in keys)


def _unpack(name: str, value: object) -> tuple[object, object]:
    if isinstance(value, np.ndarray):
        return value, None
    if isinstance(value, TensorBinding):
        return value.resource, value.dimensions
    if isinstance(value, Mapping):
        if "resource" not in value:
            raise InvalidResource(f"Input {name!r}: binding has no 'resource'")
        return value["resource"], value.get("dimensions")
    raise InvalidResource(
        f"Input {name!r}: expected an ndarray or a resource binding, got {type(value).__name__}"
    )


def bind_input(name: str, operand: Operand, value: object) -> BoundInput:
    resource, dimensions = _unpack(name, value)
    if not isinstance(resource, np.ndarray):
        raise InvalidResource(f"Input {name!r}: resource must be an ndarray, got {type(resource).__name__}")
    if resource.dtype != operand.dtype.numpy:
        raise InvalidResource(f"Input {name!r}: expected {operand.dtype}, got {resource.dtype}")

    declared = operand.shape
    if dimensions is None:
        if not is_static(declared):
            raise ShapeUnresolved(
                f"Input {name!r} is declared {format_shape(declared)}; pass 'dimensions' to resolve it"
            )
        shape = declared
    else:
        shape = as_shape(dimensions)
        if len(shape) != len(declared) or not is_static(shape):
            raise ShapeMismatch(
                f"Input {name!r}: dimensions {list(dimensions)} do not fit declared {format_shape(declared)}"
            )
        for d, s in zip(declared, shape):
            if d is not Dynamic and d != s:
                raise ShapeMismatch(
                    f"Input {name!r}: dimensions {list(dimensions)} do not fit declared {format_shape(declared)}"
                )

    if resource.size != math.prod(shape):
        raise ShapeMismatch(
            f"Input {name!r}: {format_shape(shape)} needs {math.prod(shape)} elements, buffer has {resource.size}"
        )
    return BoundInput(operand=operand, array=resource.reshape(shape), shape=tuple(shape))


def bind_inputs(declared: Mapping[str, Operand], inputs: object) -> dict[str, BoundInput]:
    if inputs is None or (isinstance(inputs, Mapping) and not inputs):
        if declared:
            raise MissingInputs(f"Graph requires inputs {_names(declared)}, none were given")
        return {}
    if not isinstance(inputs, Mapping):
        raise InvalidResource(f"Inputs must be a mapping of name -> buffer, got {type(inputs).__name__}")

    unknown = [k for k in inputs if k not in declared]
    if unknown:
        raise UnknownName(f"Unknown input names {_names(unknown)}; graph inputs are {_names(declared)}")
    missing = [k for k in declared if k not in inputs]
    if missing:
        raise MissingInputs(f"Missing inputs {_names(missing)}")

    return {name: bind_input(name, operand, inputs[name]) for name, operand in declared.items()}


def select_outputs(declared: Mapping[str, Operand], outputs: object) -> dict[str, Operand]:
    if outputs is None or (isinstance(outputs, Mapping) and not outputs):
        raise MissingOutputs(f"No outputs requested; graph outputs are {_names(declared)}")
    if not isinstance(outputs, Mapping):
        raise OutputMismatch(f"Outputs must be a mapping of name -> buffer, got {type(outputs).__name__}")
    unknown = [k for k in outputs if k not in declared]
    if unknown:
        raise UnknownName(f"Unknown output names {_names(unknown)}; graph outputs are {_names(declared)}")
    return {name: declared[name] for name in outputs}


def check_output(name: str, operand: Operand, shape: Sequence[int], buffer: object) -> np.ndarray:
    if not isinstance(buffer, np.ndarray):
        raise OutputMismatch(f"Output {name!r}: expected an ndarray, got {type(buffer).__name__}")
    if buffer.dtype != operand.dtype.numpy:
        raise OutputMismatch(f"Output {name!r}: expected {operand.dtype}, got {buffer.dtype}")
    expected = math.prod(shape)
    if buffer.size != expected:
        raise OutputMismatch(
            f"Output {name!r}: result {format_shape(tuple(shape))} has {expected} elements, buffer has {buffer.size}"
        )
    if not buffer.flags.writeable or not buffer.flags.c_contiguous:
        raise OutputMismatch(f"Output {name!r}: buffer must be writable and C-contiguous")
    return buffer
