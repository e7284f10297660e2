import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="findclass_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap hashing keeps the suite fast; production defaults are far higher
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from findclass.config import Settings  # noqa: E402
from findclass.service.clock import ManualClock  # noqa: E402
from findclass.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from findclass.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Str0ng&Passw0rd"


class RecordingNotifier:
    """Captures outgoing codes instead of mailing them."""

    def __init__(self):
        self.sent = []

    def send(self, email, purpose, code):
        self.sent.append((email, purpose, code))

    def last_code(self, email=None, purpose=None):
        for sent_email, sent_purpose, code in reversed(self.sent):
            if (email is None or sent_email == email) and (
                purpose is None or sent_purpose is purpose
            ):
                return code
        raise AssertionError("no code was sent")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Test settings with cheap hashing and a fixed secret."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        storage_backend="memory",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        argon2_time_cost=1,
        argon2_memory_cost=8,
        argon2_parallelism=1,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, memory_store, clock, notifier):
    """A fully wired runtime over a private memory store and manual clock."""
    rt = Runtime(settings, store=memory_store, clock=clock, notifier=notifier)
    yield rt
    rt.close()
