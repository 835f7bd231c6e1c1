"""Error taxonomy for graph construction and execution.

Construction errors are raised synchronously by builder and compiler calls.
Execution errors are raised by ``CompiledGraph.compute`` before any backend
work is dispatched. Backend failures are never wrapped.
"""

from __future__ import annotations


class GraphError(ValueError):
    """Base class for every error reported by the graph engine."""


# =============================================================================
# Construction-time errors
# =============================================================================


class ConstructionError(GraphError):
    """Raised by the builder or compiler for an invalid graph definition."""


class DuplicateName(ConstructionError):
    pass


class IncompatibleShape(ConstructionError):
    """Two statically known dimensions can never agree."""


class DTypeMismatch(ConstructionError):
    pass


class UnknownOperand(ConstructionError):
    """The operand was not produced by this builder."""


class InvalidOption(ConstructionError):
    pass


# =============================================================================
# Execution-time errors
# =============================================================================


class ExecutionError(GraphError):
    """Raised by ``compute`` when bindings do not fit the compiled graph."""


class MissingInputs(ExecutionError):
    pass


class MissingOutputs(ExecutionError):
    pass


class UnknownName(ExecutionError):
    pass


class ShapeUnresolved(ExecutionError):
    """A dynamic dimension was not given a concrete extent for this call."""


class InvalidResource(ExecutionError):
    pass


class OutputMismatch(ExecutionError):
    pass


class GraphDisposed(ExecutionError):
    pass


class ShapeMismatch(ConstructionError, ExecutionError):
    """Buffer length or supplied dimensions disagree with a declared shape.

    Raised by ``GraphBuilder.constant`` and by ``compute`` alike.
    """
