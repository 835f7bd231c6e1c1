"""Attribution of backend allocations to a compiled graph.

Two lifetimes exist:

* retained tensors (constant uploads) live from the first compute that needs
  them until ``dispose()``;
* call-scoped tensors (uploaded inputs, intermediates, results) live at most
  until the end of the compute call that created them.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from mlgraph.errors import GraphDisposed

if TYPE_CHECKING:
    import numpy as np

    from mlgraph.runtime.backend import Backend, DeviceTensor

logger = logging.getLogger(__name__)


class CallScope:
    """Device tensors owned by a single compute call."""

    def __init__(self, backend: Backend) -> None:
        self._backend = backend
        self._live: dict[int, DeviceTensor] = {}

    def __len__(self) -> int:
        return len(self._live)

    def track(self, tensor: DeviceTensor) -> DeviceTensor:
        self._live[tensor.handle] = tensor
        return tensor

    def release(self, tensor: DeviceTensor) -> None:
        if self._live.pop(tensor.handle, None) is not None:
            self._backend.release(tensor)

    def close(self) -> None:
        while self._live:
            _, tensor = self._live.popitem()
            self._backend.release(tensor)


class ResourceManager:
    """Tracks everything a compiled graph holds on its backend."""

    def __init__(self, backend: Backend, owner: str = "graph") -> None:
        self._backend = backend
        self._owner = owner
        self._retained: dict[int, DeviceTensor] = {}
        self._lock = threading.Lock()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def retained_count(self) -> int:
        return len(self._retained)

    def _check_live(self) -> None:
        if self._disposed:
            raise GraphDisposed(f"{self._owner} has been disposed")

    def retain(self, key: int, array: np.ndarray, tag: str) -> DeviceTensor:
        """Upload ``array`` once and keep it until dispose; later calls reuse it."""
        with self._lock:
            self._check_live()
            tensor = self._retained.get(key)
            if tensor is None:
                tensor = self._backend.upload(array, tag)
                self._retained[key] = tensor
                logger.debug("%s: retained %s (%d bytes)", self._owner, tag, tensor.array.nbytes)
            return tensor

    @contextmanager
    def call_scope(self) -> Iterator[CallScope]:
        self._check_live()
        scope = CallScope(self._backend)
        try:
            yield scope
        finally:
            scope.close()

    def dispose(self) -> None:
        """Release all retained tensors. Calling it again is a no-op."""
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            tensors = list(self._retained.values())
            self._retained.clear()
        for tensor in tensors:
            self._backend.release(tensor)
        logger.info("%s: disposed, released %d retained tensors", self._owner, len(tensors))
