"""
Metric sampling for Touchline Core.

Records the duration and outcome of instrumented operations into bounded
rolling windows, one per operation name. Recording is O(1) and safe from any
thread or task; the performance monitor collects a consistent copy of every
window on its own timer.
"""

import functools
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple

from .logging_config import get_logger


class Outcome(str, Enum):
    """Outcome of an instrumented operation."""
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class MetricSample:
    """A single timed operation."""
    operation_name: str
    duration_ms: float
    outcome: Outcome
    timestamp: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            'operation_name': self.operation_name,
            'duration_ms': self.duration_ms,
            'outcome': self.outcome.value,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SampleWindow:
    """Copy of one operation's ring buffer taken at collection time."""
    operation_name: str
    samples: Tuple[MetricSample, ...]
    new_samples: int


class MetricSampler:
    """Bounded FIFO ring buffers of samples, keyed by operation name."""

    def __init__(self, window_size: int = 500):
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.window_size = window_size
        self.logger = get_logger(__name__, 'metric_sampler')
        self._buffers: Dict[str, Deque[MetricSample]] = {}
        self._new_counts: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.stats = {
            'samples_recorded': 0,
            'collections': 0,
        }

    def record(
        self,
        operation_name: str,
        duration_ms: float,
        outcome: Outcome = Outcome.SUCCESS,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Append a sample to the operation's window."""
        sample = MetricSample(
            operation_name=operation_name,
            duration_ms=float(duration_ms),
            outcome=Outcome(outcome),
            timestamp=timestamp or datetime.utcnow(),
        )
        with self._lock:
            buffer = self._buffers.get(operation_name)
            if buffer is None:
                buffer = self._buffers[operation_name] = deque(maxlen=self.window_size)
                self._new_counts[operation_name] = 0
            buffer.append(sample)
            self._new_counts[operation_name] += 1
            self.stats['samples_recorded'] += 1

    def collect(self) -> Dict[str, SampleWindow]:
        """
        Copy every window and reset the new-sample counters.

        The copy happens under the same lock as ``record`` so no window is
        observed half-written.
        """
        with self._lock:
            windows = {
                name: SampleWindow(name, tuple(buffer), self._new_counts[name])
                for name, buffer in self._buffers.items()
            }
            for name in self._new_counts:
                self._new_counts[name] = 0
            self.stats['collections'] += 1
        return windows

    def peek(self) -> Dict[str, SampleWindow]:
        """Copy every window, leaving the new-sample counters as they are."""
        with self._lock:
            return {
                name: SampleWindow(name, tuple(buffer), self._new_counts[name])
                for name, buffer in self._buffers.items()
            }

    def operations(self) -> Tuple[str, ...]:
        """Names of every operation with at least one sample."""
        with self._lock:
            return tuple(self._buffers)

    def clear(self) -> None:
        """Drop every window."""
        with self._lock:
            self._buffers.clear()
            self._new_counts.clear()

    def time_operation(self, operation_name: str) -> 'TimerContext':
        """Context manager timing a block (usable with ``with`` and ``async with``)."""
        return TimerContext(self, operation_name)

    def instrument(self, operation_name: Optional[str] = None) -> Callable:
        """Decorator recording duration and outcome of an async function."""
        def decorator(func: Callable) -> Callable:
            name = operation_name or func.__name__

            @functools.wraps(func)
            async def wrapper(*args, **kwargs):
                async with self.time_operation(name):
                    return await func(*args, **kwargs)

            return wrapper
        return decorator


class TimerContext:
    """Times a block and records it, marking the sample as error on exception."""

    def __init__(self, sampler: MetricSampler, operation_name: str):
        self.sampler = sampler
        self.operation_name = operation_name
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration_ms = (time.perf_counter() - self.start_time) * 1000
            outcome = Outcome.ERROR if exc_type is not None else Outcome.SUCCESS
            self.sampler.record(self.operation_name, duration_ms, outcome)
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)
