# backend/icm/services/run_ids.py
from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable


class RunIdGenerator:
    """
    RUN_<DDMMYY>_<epochMillis>, e.g. RUN_150326_1773580000123.

    Millis are strictly increasing within one process: two runs started in the
    same millisecond get consecutive values instead of the same id. Across
    processes the unique index on run_id catches the rare collision and the
    store asks for a new id.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last_millis = 0

    def next_id(self) -> str:
        with self._lock:
            millis = int(self._clock() * 1000)
            if millis <= self._last_millis:
                millis = self._last_millis + 1
            self._last_millis = millis
        stamp = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
        return f"RUN_{stamp:%d%m%y}_{millis}"
