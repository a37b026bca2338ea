import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that read the environment
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatekeep.config import Settings  # noqa: E402
from gatekeep.storage.memory import MemoryStore  # noqa: E402

# A step-aligned instant so tests can reason about TOTP counters
EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FrozenClock:
    """Manually advanced clock injected into services under test."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        otp_expiration_minutes=5,
        otp_step_seconds=30,
        otp_digits=6,
        refresh_token_ttl_days=7,
        otp_issuer="Gatekeep",
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), secret_key="test-store-key")


@pytest.fixture
def test_user(memory_store):
    return memory_store.create_user("test@example.com")
