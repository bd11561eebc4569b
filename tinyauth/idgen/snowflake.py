from __future__ import annotations

import threading
import time
from typing import Callable, NamedTuple, Optional

from tinyauth.idgen.errors import ClockRegression, TimeOverflow
from tinyauth.logging import get_logger

logger = get_logger(__name__)

# 2010-11-04T01:42:54.657Z, the customary snowflake epoch
DEFAULT_EPOCH_MS = 1288834974657
NODE_BITS = 10
SEQUENCE_BITS = 12


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


class SnowflakeParts(NamedTuple):
    timestamp_ms: int
    node_id: int
    sequence: int


class Snowflake:
    """64-bit ids: sign bit, elapsed milliseconds, node id, per-ms sequence.

    One lock guards ``(last_timestamp, sequence)`` so concurrent callers on
    the same node never share a triple. When the sequence for the current
    millisecond is exhausted the caller spins until the clock ticks over.
    A clock observed moving backwards raises :class:`ClockRegression`
    instead of risking a duplicate.
    """

    def __init__(
        self,
        node_id: int = 0,
        *,
        epoch_ms: int = DEFAULT_EPOCH_MS,
        node_bits: int = NODE_BITS,
        sequence_bits: int = SEQUENCE_BITS,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if node_bits < 0 or sequence_bits < 1 or node_bits + sequence_bits > 62:
            raise ValueError("node_bits + sequence_bits must leave room for a timestamp")
        max_node_id = (1 << node_bits) - 1
        if not 0 <= node_id <= max_node_id:
            raise ValueError(f"node_id must be between 0 and {max_node_id}")
        self.node_id = node_id
        self.epoch_ms = epoch_ms
        self.node_bits = node_bits
        self.sequence_bits = sequence_bits
        self.timestamp_bits = 63 - node_bits - sequence_bits
        self.max_sequence = (1 << sequence_bits) - 1
        self._max_elapsed = (1 << self.timestamp_bits) - 1
        self._timestamp_shift = node_bits + sequence_bits
        self._clock = clock or _now_millis
        self._lock = threading.Lock()
        self._last_timestamp = -1
        self._sequence = 0

    def next_id(self) -> int:
        with self._lock:
            timestamp = self._clock()
            if timestamp < self._last_timestamp:
                logger.error(
                    "snowflake_clock_regression",
                    node_id=self.node_id,
                    last_timestamp=self._last_timestamp,
                    current_timestamp=timestamp,
                )
                raise ClockRegression(self._last_timestamp, timestamp)
            if timestamp == self._last_timestamp:
                self._sequence = (self._sequence + 1) & self.max_sequence
                if self._sequence == 0:
                    timestamp = self._wait_next_millis(self._last_timestamp)
            else:
                self._sequence = 0
            elapsed = timestamp - self.epoch_ms
            if elapsed < 0 or elapsed > self._max_elapsed:
                raise TimeOverflow(elapsed, self.timestamp_bits)
            self._last_timestamp = timestamp
            return (
                (elapsed << self._timestamp_shift)
                | (self.node_id << self.sequence_bits)
                | self._sequence
            )

    def next_id_str(self) -> str:
        return str(self.next_id())

    def _wait_next_millis(self, last_timestamp: int) -> int:
        timestamp = self._clock()
        while timestamp <= last_timestamp:
            timestamp = self._clock()
        return timestamp

    def parse(self, snowflake_id: int) -> SnowflakeParts:
        sequence = snowflake_id & self.max_sequence
        node_id = (snowflake_id >> self.sequence_bits) & ((1 << self.node_bits) - 1)
        elapsed = snowflake_id >> self._timestamp_shift
        return SnowflakeParts(elapsed + self.epoch_ms, node_id, sequence)
