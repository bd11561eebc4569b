import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Pin configuration before any import that might read the environment
os.environ.setdefault("TINYAUTH_STORE_TYPE", "inMemory")
os.environ.setdefault("TINYAUTH_TOKEN_STYLE", "uuid")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tinyauth.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
