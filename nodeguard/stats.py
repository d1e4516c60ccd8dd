"""Traffic counters and a writer that feeds them."""

from __future__ import annotations

import threading
from typing import Iterable, Protocol

from nodeguard.accounts import traffic_counter_names


class _Adder(Protocol):
    def add(self, delta: int) -> int: ...


class _MultiBufferWriter(Protocol):
    def write_multi_buffer(self, buffers: list[bytes]) -> None: ...


class Counter:
    """A thread-safe integer counter."""

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    def value(self) -> int:
        """Current value."""
        with self._lock:
            return self._value

    def add(self, delta: int) -> int:
        """Add ``delta`` and return the new value."""
        with self._lock:
            self._value += delta
            return self._value

    def set(self, value: int) -> int:
        """Set a new value and return the previous one."""
        with self._lock:
            previous = self._value
            self._value = value
            return previous


class StatsManager:
    """Named counters."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._lock = threading.Lock()

    def get_counter(self, name: str) -> Counter | None:
        """The counter registered under ``name``, if any."""
        with self._lock:
            return self._counters.get(name)

    def get_or_register_counter(self, name: str) -> Counter:
        """The counter under ``name``, created if missing."""
        with self._lock:
            return self._counters.setdefault(name, Counter())

    def unregister_counter(self, name: str) -> None:
        """Forget the counter under ``name``, if any."""
        with self._lock:
            self._counters.pop(name, None)

    def user_traffic(self, tag: str, uuid: str, reset: bool) -> tuple[int, int]:
        """Uplink and downlink bytes of a user, optionally resetting them to zero."""
        totals = []
        for name in traffic_counter_names(tag, uuid):
            counter = self.get_counter(name)
            if counter is None:
                totals.append(0)
            elif reset:
                totals.append(counter.set(0))
            else:
                totals.append(counter.value())
        return totals[0], totals[1]


class SizeStatWriter:
    """Counts the bytes written through it before passing them on."""

    def __init__(self, counter: _Adder, writer: _MultiBufferWriter) -> None:
        self.counter = counter
        self.writer = writer

    def write_multi_buffer(self, buffers: Iterable[bytes]) -> None:
        """Count and forward a batch of buffers."""
        batch = list(buffers)
        self.counter.add(sum(len(b) for b in batch))
        self.writer.write_multi_buffer(batch)

    def close(self) -> None:
        """Close the wrapped writer if it can be closed."""
        close = getattr(self.writer, "close", None)
        if callable(close):
            close()

    def interrupt(self) -> None:
        """Interrupt the wrapped writer, or close it if it cannot be interrupted."""
        interrupt = getattr(self.writer, "interrupt", None)
        if callable(interrupt):
            interrupt()
        else:
            self.close()


class DiscardWriter:
    """A writer that drops everything."""

    def write_multi_buffer(self, buffers: Iterable[bytes]) -> None:
        """Drop the buffers."""
        for _ in buffers:
            pass