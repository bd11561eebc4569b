"""Lexicographically sortable identifiers (ULID).

A ULID packs a 48-bit millisecond timestamp and 80 random bits into a single
unsigned 128-bit value, rendered as 26 Crockford base-32 characters. Because
the rendering is fixed-width and big-endian, string order equals numeric
order equals creation order (to the millisecond).
"""

from __future__ import annotations

import secrets
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from functools import total_ordering
from typing import Callable, Optional

from tinyauth.idgen.errors import InvalidIdentifierFormat, TimeOverflow

ULID_CHARS = 26
TIME_CHARS = 10
RANDOM_CHARS = 16
ULID_BYTES = 16
TIME_BYTES = 6
RANDOM_BYTES = 10

TIME_BITS = 48
RANDOM_BITS = 80
MAX_TIME = (1 << TIME_BITS) - 1

_MASK_64 = (1 << 64) - 1
_MASK_80 = (1 << RANDOM_BITS) - 1
_MASK_128 = (1 << 128) - 1

# Monotonic generation keeps incrementing across small clock regressions
CLOCK_DRIFT_TOLERANCE_MS = 10_000

ALPHABET_UPPERCASE = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ALPHABET_LOWERCASE = ALPHABET_UPPERCASE.lower()

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _build_decode_table() -> dict[str, int]:
    table: dict[str, int] = {}
    for index, char in enumerate(ALPHABET_UPPERCASE):
        table[char] = index
        table[char.lower()] = index
    # Crockford aliases
    for char, index in (("O", 0), ("I", 1), ("L", 1)):
        table[char] = index
        table[char.lower()] = index
    return table


_DECODE_TABLE = _build_decode_table()


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


@total_ordering
class Ulid:
    """Immutable 128-bit ULID value."""

    __slots__ = ("_value",)

    MIN: "Ulid"
    MAX: "Ulid"

    def __init__(self, value: int):
        if not isinstance(value, int) or not 0 <= value <= _MASK_128:
            raise InvalidIdentifierFormat("ULID value must be an unsigned 128-bit integer", value)
        self._value = value

    @classmethod
    def from_parts(cls, time_ms: int, random: bytes) -> "Ulid":
        """Build a ULID from a millisecond timestamp and 10 random bytes."""
        if time_ms < 0 or time_ms > MAX_TIME:
            raise TimeOverflow(time_ms, TIME_BITS)
        if random is None or len(random) != RANDOM_BYTES:
            raise InvalidIdentifierFormat("ULID random component must be 10 bytes", random)
        return cls((time_ms << RANDOM_BITS) | int.from_bytes(random, "big"))

    @classmethod
    def from_halves(cls, msb: int, lsb: int) -> "Ulid":
        """Build a ULID from its high and low 64-bit words (signed or unsigned)."""
        return cls(((msb & _MASK_64) << 64) | (lsb & _MASK_64))

    @classmethod
    def from_bytes(cls, data: bytes) -> "Ulid":
        if data is None or len(data) != ULID_BYTES:
            raise InvalidIdentifierFormat("ULID bytes must be exactly 16 bytes", data)
        return cls(int.from_bytes(data, "big"))

    @classmethod
    def from_uuid(cls, value: uuid.UUID) -> "Ulid":
        return cls(value.int)

    @classmethod
    def parse(cls, text: str) -> "Ulid":
        """Decode a canonical 26-character string.

        Decoding is case-insensitive and accepts the Crockford aliases
        ``O`` for 0 and ``I``/``L`` for 1.

        Raises:
            InvalidIdentifierFormat: wrong length, a character outside the
                alphabet, or a leading character implying a time above 2^48-1.
        """
        if not isinstance(text, str) or len(text) != ULID_CHARS:
            raise InvalidIdentifierFormat("ULID must be 26 characters", text)
        value = 0
        for char in text:
            digit = _DECODE_TABLE.get(char)
            if digit is None:
                raise InvalidIdentifierFormat(f"invalid ULID character {char!r}", text)
            value = (value << 5) | digit
        # 26 chars carry 130 bits; the top two must be zero
        if value > _MASK_128:
            raise InvalidIdentifierFormat("ULID time component overflows 48 bits", text)
        return cls(value)

    @staticmethod
    def is_valid(text: object) -> bool:
        if not isinstance(text, str):
            return False
        try:
            Ulid.parse(text)
        except InvalidIdentifierFormat:
            return False
        return True

    @classmethod
    def min_for(cls, time_ms: int) -> "Ulid":
        """Smallest ULID for the given millisecond (useful for range scans)."""
        return cls.from_parts(time_ms, bytes(RANDOM_BYTES))

    @classmethod
    def max_for(cls, time_ms: int) -> "Ulid":
        return cls.from_parts(time_ms, b"\xff" * RANDOM_BYTES)

    @property
    def value(self) -> int:
        return self._value

    @property
    def msb(self) -> int:
        return self._value >> 64

    @property
    def lsb(self) -> int:
        return self._value & _MASK_64

    @property
    def time(self) -> int:
        return self._value >> RANDOM_BITS

    @property
    def random(self) -> bytes:
        return (self._value & _MASK_80).to_bytes(RANDOM_BYTES, "big")

    @property
    def instant(self) -> datetime:
        return _EPOCH + timedelta(milliseconds=self.time)

    def to_bytes(self) -> bytes:
        return self._value.to_bytes(ULID_BYTES, "big")

    def to_uuid(self) -> uuid.UUID:
        return uuid.UUID(int=self._value)

    def increment(self) -> "Ulid":
        """Return the next ULID, carrying low-word overflow into the high word.

        ``MAX.increment()`` wraps around to ``MIN``.
        """
        msb = self.msb
        lsb = (self.lsb + 1) & _MASK_64
        if lsb == 0:
            msb = (msb + 1) & _MASK_64
        return Ulid.from_halves(msb, lsb)

    def _encode(self, alphabet: str) -> str:
        value = self._value
        chars = []
        for _ in range(ULID_CHARS):
            chars.append(alphabet[value & 0x1F])
            value >>= 5
        return "".join(reversed(chars))

    def lower(self) -> str:
        return self._encode(ALPHABET_LOWERCASE)

    def __str__(self) -> str:
        return self._encode(ALPHABET_UPPERCASE)

    def __repr__(self) -> str:
        return f"Ulid('{self}')"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Ulid):
            return NotImplemented
        return self._value == other._value

    def __lt__(self, other: "Ulid") -> bool:
        if not isinstance(other, Ulid):
            return NotImplemented
        return self._value < other._value

    def __hash__(self) -> int:
        return hash(self._value)


Ulid.MIN = Ulid(0)
Ulid.MAX = Ulid(_MASK_128)


class UlidFactory:
    """Creates ULIDs from a clock and a secure random source.

    ``create_monotonic`` increments the previous value when called again in
    the same millisecond, so ids from one factory are strictly increasing.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ) -> None:
        self._clock = clock or _now_millis
        self._random_bytes = random_bytes
        self._lock = threading.Lock()
        self._last: Optional[Ulid] = None

    def create(self) -> Ulid:
        return Ulid.from_parts(self._clock(), self._random_bytes(RANDOM_BYTES))

    def create_monotonic(self) -> Ulid:
        with self._lock:
            now = self._clock()
            last = self._last
            if last is not None and last.time - CLOCK_DRIFT_TOLERANCE_MS < now <= last.time:
                candidate = last.increment()
            else:
                candidate = Ulid.from_parts(now, self._random_bytes(RANDOM_BYTES))
            self._last = candidate
            return candidate


_default_factory = UlidFactory()


def new_ulid() -> Ulid:
    """Monotonic ULID from the process-wide factory."""
    return _default_factory.create_monotonic()
