"""
Request identity generation.
"""

import itertools
import time
import uuid


class RequestIdGenerator:
    """
    Produces ids of the form ``req_<epoch-ms>_<sequence>_<random>``.

    The per-instance sequence makes ids unique for the life of the owning
    controller; the random suffix separates ids minted by different
    controllers.
    """

    def __init__(self, prefix: str = "req"):
        self._prefix = prefix
        self._sequence = itertools.count(1)

    def next_id(self) -> str:
        millis = time.time_ns() // 1_000_000
        return f"{self._prefix}_{millis}_{next(self._sequence)}_{uuid.uuid4().hex[:8]}"
