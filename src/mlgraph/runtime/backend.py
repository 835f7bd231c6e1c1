"""Backend capability: device storage plus kernel dispatch.

The engine talks to a backend only through ``upload``, ``execute``,
``download`` and ``release``; every tensor a backend hands out is accounted
in its ``DeviceAllocator``. Work is run on the backend's worker pool so that
``compute`` can await it.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from mlgraph.runtime.kernels import KERNELS
from mlgraph.runtime.memory import DeviceAllocator, MemoryConfig, MemoryInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BackendConfig:
    """Configuration for a backend.

    Attributes:
        max_workers: Size of the worker pool running compute calls.
        memory: Allocator configuration.
    """

    max_workers: int = 1
    memory: MemoryConfig = field(default_factory=MemoryConfig)

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")


@dataclass(frozen=True, slots=True, eq=False)
class DeviceTensor:
    """Read-only device storage registered with the allocator under ``handle``."""

    handle: int
    array: np.ndarray
    tag: str

    @property
    def shape(self) -> tuple[int, ...]:
        return self.array.shape

    @property
    def dtype(self) -> np.dtype:
        return self.array.dtype

    def __repr__(self) -> str:  # pragma: no cover
        return f"DeviceTensor(#{self.handle}, {self.tag}, shape={self.shape}, dtype={self.dtype})"


class Backend(ABC):
    """Base class for kernel backends."""

    name = "backend"

    def __init__(self, config: BackendConfig | None = None) -> None:
        self.config = config or BackendConfig()
        self.allocator = DeviceAllocator(self.config.memory)
        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()

    def memory(self) -> MemoryInfo:
        return self.allocator.memory()

    # -------------------------------------------------------------------------
    # Worker pool
    # -------------------------------------------------------------------------

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.config.max_workers,
                    thread_name_prefix=f"mlgraph-{self.name}",
                )
                logger.info("%s backend: started %d worker(s)", self.name, self.config.max_workers)
            return self._pool.submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def _register(self, array: np.ndarray, tag: str) -> DeviceTensor:
        array.setflags(write=False)
        return DeviceTensor(handle=self.allocator.alloc(array.nbytes, tag), array=array, tag=tag)

    def upload(self, array: np.ndarray, tag: str) -> DeviceTensor:
        """Copy host data into new device storage."""
        return self._register(np.array(array, copy=True, order="C"), tag)

    def download(self, tensor: DeviceTensor, out: np.ndarray) -> None:
        """Copy device storage into a caller-owned, C-contiguous buffer."""
        np.copyto(out.reshape(-1), tensor.array.reshape(-1))

    def release(self, tensor: DeviceTensor) -> None:
        self.allocator.free(tensor.handle)

    # -------------------------------------------------------------------------
    # Kernels
    # -------------------------------------------------------------------------

    @abstractmethod
    def execute(self, kind: str, inputs: Sequence[DeviceTensor], options: Mapping[str, object]) -> list[DeviceTensor]:
        """Run one operation and return freshly allocated result tensors."""


class NumpyBackend(Backend):
    """Reference backend running the NumPy kernels in ``KERNELS``."""

    name = "numpy"

    def execute(self, kind, inputs, options):
        try:
            fn = KERNELS[kind]
        except KeyError:
            raise NotImplementedError(f"{self.name} backend has no kernel for {kind!r}") from None

        results = fn([t.array for t in inputs], options)
        outputs: list[DeviceTensor] = []
        try:
            for i, r in enumerate(results):
                outputs.append(self._register(np.array(r, copy=True, order="C"), f"{kind}:{i}"))
        except BaseException:
            for t in outputs:
                self.release(t)
            raise
        return outputs
