"""
Memory Sentinel

Owns the lifetime of every decoded image buffer. A scope is acquired when a
request is admitted and released when it reaches a terminal state; release
zero-fills the raw upload bytes and every pixel array derived from them on
all exit paths (normal return, adapter failure, timeout, cancellation,
fatal errors). Privacy does not depend on garbage collection.

Nothing in this module ever formats buffer contents into a string.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Protocol, Union

import numpy as np

from imagery.core.exceptions import FatalEngineError
from imagery.core.logging import get_logger

logger = get_logger(__name__)


class ImageBuffer:
    """Exclusive owner of the raw bytes of one uploaded image."""

    __slots__ = ("_data", "_size", "_wiped", "__weakref__")

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        # Always take a private mutable copy so the wipe reaches the only copy we own
        self._data: Optional[bytearray] = bytearray(data)
        self._size = len(self._data)
        self._wiped = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def wiped(self) -> bool:
        return self._wiped

    def view(self) -> memoryview:
        """Read-only view of the bytes; invalid once the buffer is wiped."""
        if self._wiped or self._data is None:
            raise FatalEngineError("Image buffer accessed after wipe", stage="sentinel")
        return memoryview(self._data).toreadonly()

    def wipe(self):
        """Zero-fill the bytes in place and drop the reference."""
        if self._data is not None:
            self._data[:] = bytes(len(self._data))
            self._data = None
        self._wiped = True

    def __len__(self) -> int:
        return self._size

    def __repr__(self) -> str:
        return f"ImageBuffer(size={self._size}, wiped={self._wiped})"


class BufferTracker(Protocol):
    """Observer notified when a buffer scope is acquired and released."""

    def on_acquire(self, buffer: ImageBuffer) -> None: ...

    def on_release(self, buffer: ImageBuffer) -> None: ...


class LiveBufferCounter:
    """Default tracker: counts live scopes for the status endpoint."""

    def __init__(self):
        self._lock = threading.Lock()
        self.acquired = 0
        self.released = 0

    def on_acquire(self, buffer: ImageBuffer) -> None:
        with self._lock:
            self.acquired += 1

    def on_release(self, buffer: ImageBuffer) -> None:
        with self._lock:
            self.released += 1

    @property
    def live(self) -> int:
        return self.acquired - self.released


class BufferScope:
    """One acquired buffer plus the pixel arrays derived from it."""

    def __init__(self, sentinel: "MemorySentinel", buffer: ImageBuffer):
        self._sentinel = sentinel
        self.buffer = buffer
        self._derived: List[np.ndarray] = []
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def register(self, array: np.ndarray) -> np.ndarray:
        """Attach a derived pixel array so it is zeroed on release."""
        if self._released:
            raise FatalEngineError("Cannot register pixels on a released scope", stage="sentinel")
        self._derived.append(array)
        return array

    def release(self):
        """Wipe everything this scope owns. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        try:
            for array in self._derived:
                if array.flags.writeable:
                    array.fill(0)
            self._derived.clear()
        finally:
            self.buffer.wipe()
            self._sentinel._on_release(self)


class MemorySentinel:
    """Hands out buffer scopes and guarantees they are wiped."""

    def __init__(self, tracker: Optional[BufferTracker] = None):
        self.tracker = tracker or LiveBufferCounter()
        self._lock = threading.Lock()
        self._live: Dict[int, BufferScope] = {}

    def acquire(self, buffer: ImageBuffer) -> BufferScope:
        """Open a scope over ``buffer``; the caller must ``release()`` it."""
        if not isinstance(buffer, ImageBuffer):
            raise FatalEngineError("Sentinel can only scope ImageBuffer instances", stage="sentinel")
        if buffer.wiped:
            raise FatalEngineError("Cannot acquire a wiped image buffer", stage="sentinel")
        with self._lock:
            if id(buffer) in self._live:
                raise FatalEngineError("Image buffer is already owned by another scope", stage="sentinel")
            scope = BufferScope(self, buffer)
            self._live[id(buffer)] = scope
        self.tracker.on_acquire(buffer)
        return scope

    @contextmanager
    def scope(self, buffer: ImageBuffer) -> Iterator[BufferScope]:
        """
        Scoped acquisition with guaranteed release.

        Usage:
            with sentinel.scope(request.image) as scope:
                pixels = scope.register(decode(scope.buffer.view()))
                ...
        """
        acquired = self.acquire(buffer)
        try:
            yield acquired
        finally:
            acquired.release()

    def _on_release(self, scope: BufferScope):
        with self._lock:
            self._live.pop(id(scope.buffer), None)
        self.tracker.on_release(scope.buffer)

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def release_all(self) -> int:
        """Wipe every live scope (shutdown path). Returns how many were wiped."""
        with self._lock:
            scopes = list(self._live.values())
        for scope in scopes:
            scope.release()
        if scopes:
            logger.warning("sentinel_forced_release", count=len(scopes))
        return len(scopes)
