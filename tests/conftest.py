import asyncio
import inspect
import os
import re
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="studyauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from studyauth.config import Settings  # noqa: E402
from studyauth.service.notifications import DeliveryResult  # noqa: E402
from studyauth.service.runtime import Runtime  # noqa: E402
from studyauth.storage.memory import MemoryStore  # noqa: E402

_CODE_PATTERN = re.compile(r"\b(\d{4,10})\b")


class RecordingNotifier:
    """Keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.fail = False
        self.delay = 0.0

    async def _record(self, channel, destination, subject, body) -> DeliveryResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.messages.append(
            {"channel": channel, "destination": destination, "subject": subject, "body": body}
        )
        if self.fail:
            return DeliveryResult(delivered=False, provider="recording", error="send_failed")
        return DeliveryResult(
            delivered=True, provider="recording", message_id=f"msg-{len(self.messages)}"
        )

    async def send_sms(self, destination: str, message: str) -> DeliveryResult:
        return await self._record("sms", destination, None, message)

    async def send_email(self, destination: str, subject: str, body: str) -> DeliveryResult:
        return await self._record("email", destination, subject, body)

    def sent_to(self, destination: str) -> list[dict]:
        return [m for m in self.messages if m["destination"] == destination]

    def last_code(self, destination: str) -> str:
        for message in reversed(self.sent_to(destination)):
            match = _CODE_PATTERN.search(message["body"])
            if match:
                return match.group(1)
        raise AssertionError(f"no code was sent to {destination}")


@pytest.fixture
def settings(tmp_path):
    """Test settings with cheap argon2 parameters."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        password_hash_parallelism=1,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, memory_store, notifier):
    return Runtime(settings, store=memory_store, notifier=notifier)


@pytest.fixture
def auth(runtime):
    return runtime.auth


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
