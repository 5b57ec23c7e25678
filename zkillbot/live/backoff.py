from __future__ import annotations

import random
from dataclasses import dataclass, field

DEFAULT_MIN_SEC = 0.1
DEFAULT_MAX_SEC = 10.0
DEFAULT_FACTOR = 2.0


@dataclass
class Backoff:
    """
    Exponential reconnect delay: min * factor**attempts, capped at max.

    Zero-valued fields fall back to min=100ms, max=10s, factor=2. With jitter
    the delay is drawn uniformly between min and the computed value.
    Not thread-safe; owned by the reconnect loop.
    """

    min: float = 0.0
    max: float = 0.0
    factor: float = 0.0
    jitter: bool = False
    _attempts: int = field(default=0, init=False, repr=False)

    @property
    def attempts(self) -> int:
        return self._attempts

    def duration(self) -> float:
        lo = self.min if self.min > 0 else DEFAULT_MIN_SEC
        hi = self.max if self.max > 0 else DEFAULT_MAX_SEC
        factor = self.factor if self.factor > 0 else DEFAULT_FACTOR

        # Past the cap the exponent can overflow a float, stop growing it.
        try:
            dur = min(lo * factor ** self._attempts, hi)
        except OverflowError:
            dur = hi
        if self.jitter:
            dur = random.uniform(lo, dur)
        self._attempts += 1
        return dur

    def reset(self) -> None:
        self._attempts = 0
