"""
Call Escalation Relay - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import json
import os
import sys
from typing import Callable, Dict, Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from callrelay.config import Settings
from callrelay.core.audit import AuditRecorder
from callrelay.core.exceptions import DispatchError
from callrelay.core.pipeline import EventPipeline, create_pipeline
from callrelay.core.session_store import InMemoryCallSessionStore
from callrelay.services.persistence import InMemoryPersistenceGateway
from callrelay.services.signature import sign


TEST_SECRET = "test-webhook-secret"

LEAD = "+15145550001"
MANAGER = "+15145550002"
ON_CALL_1 = "+15145550003"
ON_CALL_2 = "+15145550004"
CALLER = "+15145551234"


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external dependencies")


# =============================================================================
# Fakes
# =============================================================================

class FakeSmsGateway:
    """
    In-memory SMS gateway.

    ``failures`` maps a recipient to how many sends to it should fail before
    succeeding; ``permanent`` recipients always fail without retry.
    """

    def __init__(self, failures: Optional[Dict[str, int]] = None, permanent: Tuple[str, ...] = ()):
        self.calls: List[Tuple[str, str]] = []
        self.sent: List[Tuple[str, str]] = []
        self._failures = dict(failures or {})
        self._permanent = set(permanent)

    async def send(self, to: str, body: str) -> str:
        self.calls.append((to, body))
        if to in self._permanent:
            raise DispatchError("unreachable number", recipient=to, retryable=False)
        remaining = self._failures.get(to, 0)
        if remaining:
            self._failures[to] = remaining - 1
            raise DispatchError("simulated provider failure", recipient=to)
        self.sent.append((to, body))
        return f"SM{len(self.sent):04d}"

    def sent_to(self) -> List[str]:
        return [to for to, _ in self.sent]


class RecordingSleep:
    """Sleep replacement that returns immediately and remembers delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FailingPersistenceGateway(InMemoryPersistenceGateway):
    """Persistence gateway whose writes all fail."""

    async def upsert_call(self, record):
        raise RuntimeError("database down")

    async def upsert_lead(self, record):
        raise RuntimeError("database down")

    async def append_audit(self, record):
        raise RuntimeError("database down")


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    Four recipients across the three roles, one municipal exchange code,
    and a generous dispatch wait so responses include delivery results.
    """
    return Settings(
        _env_file=None,
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        webhook_secret=TEST_SECRET,
        recipients_lead=LEAD,
        recipients_manager=MANAGER,
        recipients_on_call=f"{ON_CALL_1},{ON_CALL_2}",
        p2_phone_prefixes="514872",
        persistence_backend="memory",
        dispatch_response_timeout_seconds=5.0,
    )


# =============================================================================
# Collaborator Fixtures
# =============================================================================

@pytest.fixture
def fake_sms() -> FakeSmsGateway:
    return FakeSmsGateway()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def persistence() -> InMemoryPersistenceGateway:
    return InMemoryPersistenceGateway()


@pytest.fixture
def session_store() -> InMemoryCallSessionStore:
    return InMemoryCallSessionStore(max_sessions=100)


@pytest.fixture
def audit() -> AuditRecorder:
    """Audit recorder without a persistent backend."""
    return AuditRecorder(gateway=None)


# =============================================================================
# Pipeline Fixtures
# =============================================================================

@pytest.fixture
def pipeline(
    test_settings: Settings,
    fake_sms: FakeSmsGateway,
    persistence: InMemoryPersistenceGateway,
    no_sleep: RecordingSleep,
) -> EventPipeline:
    """
    Create a test pipeline with fake collaborators.

    Fully functional, but SMS goes to an in-memory gateway and retries
    never actually wait.
    """
    return create_pipeline(
        test_settings,
        sms_gateway=fake_sms,
        persistence=persistence,
        sleep=no_sleep,
    )


# =============================================================================
# Payload Fixtures
# =============================================================================

def build_event(event_type: str, call_id: str = "c1", event_id: Optional[str] = None, **extra) -> bytes:
    """Serialise a webhook payload the way the call platform sends it."""
    payload = {"type": event_type, "call": {"id": call_id}}
    if event_id is not None:
        payload["id"] = event_id
    payload["call"].update(extra.pop("call", {}))
    payload.update(extra)
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


@pytest.fixture
def event_body() -> Callable[..., bytes]:
    """Factory for raw webhook bodies."""
    return build_event


@pytest.fixture
def signed() -> Callable[[bytes], str]:
    """Signature for a body under the test secret."""
    return lambda body: sign(body, TEST_SECRET)


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app(test_settings: Settings, fake_sms: FakeSmsGateway, persistence: InMemoryPersistenceGateway, no_sleep):
    """Create a FastAPI app instance wired to the fakes."""
    # Import here to avoid circular imports
    from main import create_app

    return create_app(
        settings=test_settings,
        sms_gateway=fake_sms,
        persistence=persistence,
        sleep=no_sleep,
    )


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(app) as c:
        yield c
