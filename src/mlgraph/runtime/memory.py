"""Device allocator: global accounting of backend tensor storage.

Every buffer a backend materialises (uploaded inputs, retained constants,
kernel results) is registered here under a handle. The allocator is the
single source of truth for leak checks: its ``memory()`` snapshot must return
to the same value after a compiled graph is disposed.

Key design principles:
- Determinism: handles are issued in increasing order.
- Debuggability: OOM errors include the largest live allocations.
- Thread safety: one lock guards all bookkeeping, since concurrent compute
  calls allocate from worker threads.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import NamedTuple

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class MemoryConfig:
    """Configuration for the device allocator.

    Attributes:
        capacity_bytes: Upper bound on live bytes, or None for unbounded.
        alignment: Allocation sizes are rounded up to this many bytes.
                   Must be a power of 2. Default is 1 (exact byte counts).
    """

    capacity_bytes: int | None = None
    alignment: int = 1

    def __post_init__(self) -> None:
        if self.capacity_bytes is not None and self.capacity_bytes <= 0:
            raise ValueError(f"capacity_bytes must be positive, got {self.capacity_bytes}")
        if self.alignment <= 0 or (self.alignment & (self.alignment - 1)) != 0:
            raise ValueError(
                f"alignment must be a positive power of 2, got {self.alignment}"
            )


# =============================================================================
# Allocation Tracking
# =============================================================================


class Allocation(NamedTuple):
    """Record of a single live allocation."""

    handle: int
    size: int
    tag: str


class MemoryInfo(NamedTuple):
    """Snapshot of live allocations."""

    num_tensors: int
    num_bytes: int


class DeviceOutOfMemoryError(MemoryError):
    """Raised when an allocation would exceed the configured capacity."""


# =============================================================================
# Allocator
# =============================================================================


@dataclass
class DeviceAllocator:
    """Handle-based allocator with live/peak accounting.

    Example:
        >>> allocator = DeviceAllocator(MemoryConfig(capacity_bytes=1 << 20))
        >>> h = allocator.alloc(64, tag="matmul#3")
        >>> allocator.memory()
        MemoryInfo(num_tensors=1, num_bytes=64)
        >>> allocator.free(h)
    """

    config: MemoryConfig = field(default_factory=MemoryConfig)

    _allocations: dict[int, Allocation] = field(default_factory=dict, repr=False)
    _next_handle: int = field(default=1, repr=False)
    _live_bytes: int = field(default=0, repr=False)
    _peak_bytes: int = field(default=0, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # -------------------------------------------------------------------------
    # Public Properties
    # -------------------------------------------------------------------------

    @property
    def live_bytes(self) -> int:
        return self._live_bytes

    @property
    def peak_bytes(self) -> int:
        """High-water mark of allocated bytes."""
        return self._peak_bytes

    def memory(self) -> MemoryInfo:
        with self._lock:
            return MemoryInfo(num_tensors=len(self._allocations), num_bytes=self._live_bytes)

    # -------------------------------------------------------------------------
    # Core Operations
    # -------------------------------------------------------------------------

    def alloc(self, size: int, tag: str) -> int:
        """Register ``size`` bytes of device storage.

        Args:
            size: Number of bytes (zero is allowed for empty tensors).
            tag: Human-readable identifier for diagnostics (e.g., "input:a").

        Returns:
            A fresh handle.

        Raises:
            DeviceOutOfMemoryError: If the capacity would be exceeded.
        """
        if size < 0:
            raise ValueError(f"Allocation size must be non-negative, got {size}")
        aligned = self._align_up(size)
        with self._lock:
            capacity = self.config.capacity_bytes
            if capacity is not None and self._live_bytes + aligned > capacity:
                self._raise_oom_error(size, aligned, tag)
            handle = self._next_handle
            self._next_handle += 1
            self._allocations[handle] = Allocation(handle=handle, size=aligned, tag=tag)
            self._live_bytes += aligned
            self._peak_bytes = max(self._peak_bytes, self._live_bytes)
        return handle

    def free(self, handle: int) -> None:
        """Release a handle returned by ``alloc``.

        Raises:
            KeyError: If the handle is unknown or already freed.
        """
        with self._lock:
            if handle not in self._allocations:
                raise KeyError(f"Cannot free handle {handle}: not allocated or already freed")
            self._live_bytes -= self._allocations.pop(handle).size

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def get_allocations(self) -> list[Allocation]:
        with self._lock:
            return sorted(self._allocations.values(), key=lambda a: a.handle)

    def format_state(self, *, max_allocs: int = 10) -> str:
        allocations = self.get_allocations()
        capacity = self.config.capacity_bytes
        lines = [
            "DeviceAllocator:",
            f"  Capacity:  {'unbounded' if capacity is None else f'{capacity:,} bytes'}",
            f"  Live:      {self._live_bytes:,} bytes in {len(allocations)} tensors",
            f"  Peak:      {self._peak_bytes:,} bytes",
        ]
        for alloc in allocations[:max_allocs]:
            lines.append(f"    #{alloc.handle}: {alloc.size:,} bytes [{alloc.tag}]")
        if len(allocations) > max_allocs:
            lines.append(f"    ... ({len(allocations) - max_allocs} more)")
        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _align_up(self, value: int) -> int:
        alignment = self.config.alignment
        return (value + alignment - 1) & ~(alignment - 1)

    def _raise_oom_error(self, size: int, aligned_size: int, tag: str) -> None:
        """Raise OOM error with detailed diagnostics. Caller holds the lock."""
        allocations = list(self._allocations.values())
        lines = [
            f"Device out of memory: cannot allocate {size} bytes "
            f"(aligned: {aligned_size}) for '{tag}'",
            "",
            f"  Capacity:        {self.config.capacity_bytes:,} bytes",
            f"  Currently live:  {self._live_bytes:,} bytes",
        ]
        if allocations:
            lines.append(f"Top allocations ({min(len(allocations), 5)} of {len(allocations)}):")
            for alloc in sorted(allocations, key=lambda a: -a.size)[:5]:
                lines.append(f"  #{alloc.handle}: {alloc.size:,} bytes [{alloc.tag}]")
        logger.warning("allocation of %d bytes for %r failed", size, tag)
        raise DeviceOutOfMemoryError("\n".join(lines))
