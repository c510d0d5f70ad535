"""
Identifier generation for deliveries, feedback, drafts and execution events.

IDs look like ``d_1760867000_001``: the wall-clock second plus a counter that
restarts whenever the second changes. This keeps IDs unique within a process
and roughly chronological without a central sequence.
"""

import threading
import time

_lock = threading.Lock()
_last_second = 0
_sequence = 0


def generate_id(prefix: str) -> str:
    global _last_second, _sequence
    with _lock:
        now = int(time.time())
        if now != _last_second:
            _last_second = now
            _sequence = 0
        _sequence += 1
        return f"{prefix}_{now}_{_sequence:03d}"
