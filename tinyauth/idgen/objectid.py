from __future__ import annotations

import os
import secrets
import threading
import time
from typing import Callable, Optional

from tinyauth.idgen.errors import InvalidIdentifierFormat, TimeOverflow

OBJECT_ID_BYTES = 12
OBJECT_ID_CHARS = 24
_MAX_COUNTER = 0xFFFFFF
_MAX_SECONDS = 0xFFFFFFFF


class ObjectIdGenerator:
    """MongoDB-style ObjectIds rendered as 24 hex characters.

    Layout: 4-byte big-endian seconds, 5-byte per-process random value,
    3-byte counter seeded randomly. The process value is regenerated after a
    fork so parent and child never share a stream.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._pid = os.getpid()
        self._process_value = secrets.token_bytes(5)
        self._counter = secrets.randbelow(_MAX_COUNTER + 1)

    def _next_counter(self) -> tuple[bytes, int]:
        with self._lock:
            if os.getpid() != self._pid:
                self._pid = os.getpid()
                self._process_value = secrets.token_bytes(5)
            self._counter = (self._counter + 1) & _MAX_COUNTER
            return self._process_value, self._counter

    def next_bytes(self) -> bytes:
        seconds = int(self._clock())
        if not 0 <= seconds <= _MAX_SECONDS:
            raise TimeOverflow(seconds, 32)
        process_value, counter = self._next_counter()
        return seconds.to_bytes(4, "big") + process_value + counter.to_bytes(3, "big")

    def next_id(self) -> str:
        return self.next_bytes().hex()


def object_id_timestamp(object_id: str) -> int:
    """Seconds since the epoch encoded in an ObjectId string."""
    if not isinstance(object_id, str) or len(object_id) != OBJECT_ID_CHARS:
        raise InvalidIdentifierFormat("ObjectId must be 24 hex characters", object_id)
    try:
        raw = bytes.fromhex(object_id)
    except ValueError as exc:
        raise InvalidIdentifierFormat("ObjectId must be hexadecimal", object_id) from exc
    return int.from_bytes(raw[:4], "big")
