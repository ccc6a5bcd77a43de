import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import Optional

# Configure the runtime before any flashdeck import reads the environment
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("IDENTITY_BACKEND", "memory")
# Counters and audit events stay in process so every test starts from a clean slate
os.environ["REDIS_URL"] = ""
os.environ["SECURITY_DELAY_MAX_MS"] = "0"
# TestClient talks plain HTTP; Secure cookies would never be sent back
os.environ["COOKIE_SECURE"] = "false"
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from flashdeck.service.runtime import reset_runtime_for_tests  # noqa: E402
from flashdeck.storage.models import Session, User  # noqa: E402

CSRF_TOKEN = "test-csrf-token"
OLD_PASSWORD = "OldPass1!"
NEW_PASSWORD = "NewPass2@"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from flashdeck.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def registered_user(runtime) -> User:
    user = runtime.identity.register_user("alice@example.com", OLD_PASSWORD)
    runtime.profiles.create_profile(user.id)
    return user


@pytest.fixture
def user_session(runtime, registered_user) -> Session:
    return runtime.identity.issue_session(registered_user)


def session_cookies(session: Session, *, csrf_token: str = CSRF_TOKEN, user_id: Optional[str] = None) -> dict:
    return {
        "access_token": session.access_token,
        "refresh_token": session.refresh_token,
        "user_id": user_id or session.user_id,
        "csrf_token": csrf_token,
    }


def load_cookies(client, cookies: dict) -> None:
    client.cookies.clear()
    for name, value in cookies.items():
        client.cookies.set(name, value)


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
