"""Runtime: bindings, execution, backends and device memory accounting."""

from mlgraph.runtime.backend import Backend, BackendConfig, DeviceTensor, NumpyBackend
from mlgraph.runtime.bindings import BoundInput, TensorBinding
from mlgraph.runtime.executor import ExecutionPlan, Executor, KernelContractError
from mlgraph.runtime.kernels import KERNELS, kernel
from mlgraph.runtime.memory import (
    Allocation,
    DeviceAllocator,
    DeviceOutOfMemoryError,
    MemoryConfig,
    MemoryInfo,
)
from mlgraph.runtime.resources import CallScope, ResourceManager

__all__ = [
    # backend.py
    "Backend",
    "BackendConfig",
    "DeviceTensor",
    "NumpyBackend",
    # bindings.py
    "BoundInput",
    "TensorBinding",
    # executor.py
    "ExecutionPlan",
    "Executor",
    "KernelContractError",
    # kernels.py
    "KERNELS",
    "kernel",
    # memory.py
    "Allocation",
    "DeviceAllocator",
    "DeviceOutOfMemoryError",
    "MemoryConfig",
    "MemoryInfo",
    # resources.py
    "CallScope",
    "ResourceManager",
]
