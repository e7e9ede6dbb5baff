"""Transaction reference generation.

References look like `<namespace>_<item_id>_<buyer_id>_<stamp>` where `stamp`
is a millisecond timestamp that never repeats within the process: when the
clock has not moved past the last issued stamp, the next stamp is `last + 1`.
"""

import threading
import time
from typing import Callable


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class ReferenceGenerator:
    """Issues strictly increasing stamps folded into readable references."""

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._last_stamp = 0
        self._lock = threading.Lock()

    def _next_stamp(self) -> int:
        with self._lock:
            stamp = max(self._clock(), self._last_stamp + 1)
            self._last_stamp = stamp
            return stamp

    def generate(self, namespace: str, item_id: str, buyer_id: str) -> str:
        return f"{namespace}_{item_id}_{buyer_id}_{self._next_stamp()}"


_default_generator = ReferenceGenerator()


def generate_reference(namespace: str, item_id: str, buyer_id: str) -> str:
    """Generate a reference with the process-wide generator."""

    return _default_generator.generate(namespace, item_id, buyer_id)
