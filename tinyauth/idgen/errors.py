from __future__ import annotations


class InvalidIdentifierFormat(ValueError):
    """Raised when a token string fails identifier decoding rules."""

    def __init__(self, message: str, value: object = None):
        super().__init__(message)
        self.message = message
        self.value = value


class TimeOverflow(ValueError):
    """Raised when a timestamp does not fit the identifier's time field."""

    def __init__(self, time_value: int, bits: int):
        super().__init__(f"time value {time_value} does not fit in {bits} bits")
        self.time_value = time_value
        self.bits = bits


class ClockRegression(RuntimeError):
    """Raised when the system clock moved backwards between two generations."""

    def __init__(self, last_timestamp: int, current_timestamp: int):
        super().__init__(
            "clock moved backwards by {} ms; refusing to generate id".format(
                last_timestamp - current_timestamp
            )
        )
        self.last_timestamp = last_timestamp
        self.current_timestamp = current_timestamp


__all__ = ["InvalidIdentifierFormat", "TimeOverflow", "ClockRegression"]
