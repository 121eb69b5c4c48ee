import asyncio
import base64
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Settings are read lazily, but keep the environment predictable for every test
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric.ed25519 import (  # noqa: E402
    Ed25519PrivateKey,
)
from cryptography.hazmat.primitives.serialization import (  # noqa: E402
    Encoding,
    PublicFormat,
)

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from keygrant.config import Settings, reset_settings_cache  # noqa: E402
from keygrant.service.errors import IdentityProviderError  # noqa: E402
from keygrant.storage.memory import MemoryStore  # noqa: E402
from keygrant.storage.models import ExternalIdentity  # noqa: E402

# 2023-11-14T22:13:20Z
EPOCH_MS = 1_700_000_000_000


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, ms: int = EPOCH_MS):
        self.ms = ms

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.ms / 1000, tz=timezone.utc)

    def now_ms(self) -> float:
        return float(self.ms)

    def advance(self, **kwargs) -> None:
        self.ms += int(timedelta(**kwargs).total_seconds() * 1000)


class FakeIdentityProvider:
    """In-process GitHub stand-in; codes and credentials are registered by tests."""

    def __init__(self):
        self.codes = {}
        self.credentials = {}
        self.exchanged = []
        self.resolved = []

    def register(self, code: str, credential: str, identity: ExternalIdentity) -> None:
        self.codes[code] = credential
        self.credentials[credential] = identity

    def revoke_credential(self, credential: str) -> None:
        self.credentials.pop(credential, None)

    async def exchange_code_for_credential(self, code: str) -> str:
        self.exchanged.append(code)
        # GitHub codes are single use
        credential = self.codes.pop(code, None)
        if credential is None:
            raise IdentityProviderError("code exchange failed")
        return credential

    async def resolve_identity(self, credential: str) -> ExternalIdentity:
        self.resolved.append(credential)
        identity = self.credentials.get(credential)
        if identity is None:
            raise IdentityProviderError("identity lookup failed")
        return identity

    def authorization_url(self, scopes, redirect_url: str) -> str:
        from urllib.parse import urlencode

        query = urlencode({"client_id": "test-client", "redirect_uri": redirect_url})
        return f"https://github.test/login/oauth/authorize?{query}"


class Keypair:
    """Client-side Ed25519 key that signs proofs the way browsers do."""

    def __init__(self):
        self.private_key = Ed25519PrivateKey.generate()
        raw = self.private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.token_id = raw.hex()

    def sign(self, scope: str, operand) -> str:
        payload = f"{scope}:{operand}".encode("utf-8")
        signature = self.private_key.sign(payload)
        return base64.urlsafe_b64encode(signature).decode("ascii").rstrip("=")


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def identity_provider():
    return FakeIdentityProvider()


@pytest.fixture
def octocat():
    return ExternalIdentity(id="583231", login="octocat", display_name="The Octocat")


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def make_keypair():
    return Keypair


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock, session_ttl_minutes=60)


@pytest.fixture
def settings():
    return Settings(
        use_memory_store=True,
        test_mode=True,
        session_ttl_minutes=60,
        session_purge_interval_seconds=0,
        github_client_id="test-client",
        github_client_secret="test-secret",
    )


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
