"""Execution contexts: a backend plus the builders and graphs bound to it."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from mlgraph.ir.builder import GraphBuilder
from mlgraph.runtime.backend import Backend, BackendConfig, NumpyBackend
from mlgraph.runtime.memory import MemoryInfo


@dataclass
class Context:
    backend: Backend = field(default_factory=NumpyBackend)

    def graph_builder(self, name: str = "graph") -> GraphBuilder:
        return GraphBuilder(context=self, name=name)

    def memory(self) -> MemoryInfo:
        """Live allocation count and bytes of this context's backend."""
        return self.backend.memory()

    def close(self) -> None:
        self.backend.shutdown()


def create_context(config: BackendConfig | None = None) -> Context:
    return Context(backend=NumpyBackend(config))


_default: Context | None = None
_default_lock = threading.Lock()


def default_context() -> Context:
    global _default
    with _default_lock:
        if _default is None:
            _default = create_context()
        return _default
