import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable


@dataclass
class _ChannelState:
    last_call: float | None = None
    lock: Lock = field(default_factory=Lock)


class ChannelThrottle:
    """Spaces out calls to the same channel by at least ``min_interval_ms``."""

    def __init__(
        self,
        *,
        min_interval_ms: int,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval_seconds = min_interval_ms / 1000
        self._sleep = sleep
        self._clock = clock
        self._states: dict[str, _ChannelState] = {}
        self._lock = Lock()

    def wait(self, channel: str) -> float:
        """Blocks until the channel may be called again. Returns seconds waited."""
        with self._lock:
            state = self._states.setdefault(channel, _ChannelState())

        with state.lock:
            waited = 0.0
            if state.last_call is not None:
                remaining = state.last_call + self.min_interval_seconds - self._clock()
                if remaining > 0:
                    self._sleep(remaining)
                    waited = remaining
            state.last_call = self._clock()
            return waited

    def clear(self) -> None:
        with self._lock:
            self._states.clear()
