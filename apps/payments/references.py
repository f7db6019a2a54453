import threading
import time


class ReferenceGenerator:
    """
    Builds payment references as ``<order_id>-<microsecond timestamp>``.

    The timestamp part never repeats within a process, even when two calls land
    on the same clock tick or the clock steps backwards, so retrying a checkout
    always yields a fresh reference.
    """

    def __init__(self, clock=time.time_ns) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last = 0

    def generate(self, order_id) -> str:
        with self._lock:
            stamp = max(self._clock() // 1000, self._last + 1)
            self._last = stamp
        return f"{order_id}-{stamp}"


_default_generator = ReferenceGenerator()


def generate_reference(order_id) -> str:
    return _default_generator.generate(order_id)
