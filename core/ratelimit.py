"""
Per-client request rate limiting
"""
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


@dataclass
class RateLimiter:
    """Fixed-window counter per client key"""

    max_requests: int = 100
    window_seconds: int = 15 * 60
    buckets: Dict[str, Tuple[int, float]] = field(default_factory=dict)

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        current = time.monotonic() if now is None else now
        count, window_start = self.buckets.get(key, (0, current))
        if current - window_start >= self.window_seconds:
            count, window_start = 0, current
        if count >= self.max_requests:
            return False
        self.buckets[key] = (count + 1, window_start)
        if len(self.buckets) > 10_000:
            self._prune(current)
        return True

    def _prune(self, now: float) -> None:
        expired = [k for k, (_, start) in self.buckets.items() if now - start >= self.window_seconds]
        for key in expired:
            del self.buckets[key]
