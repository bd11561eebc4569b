from __future__ import annotations

import math
import secrets
from typing import Callable

DEFAULT_ALPHABET = "_-0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
DEFAULT_SIZE = 21


def nanoid(
    size: int = DEFAULT_SIZE,
    alphabet: str = DEFAULT_ALPHABET,
    random_bytes: Callable[[int], bytes] = secrets.token_bytes,
) -> str:
    """Generate a NanoId using masked rejection sampling.

    Random bytes are masked down to the next power of two above the alphabet
    size and values past the alphabet are discarded, which keeps every
    symbol equally likely for alphabets of any length.
    """
    if size <= 0:
        raise ValueError("size must be positive")
    if not 1 < len(alphabet) <= 256:
        raise ValueError("alphabet must contain between 2 and 256 symbols")

    mask = (2 << int(math.log2(len(alphabet) - 1))) - 1
    step = int(math.ceil(1.6 * mask * size / len(alphabet)))

    result: list[str] = []
    while True:
        for byte in random_bytes(step):
            index = byte & mask
            if index < len(alphabet):
                result.append(alphabet[index])
                if len(result) == size:
                    return "".join(result)
