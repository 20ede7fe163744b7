"""
Pytest Configuration and Shared Fixtures

This file provides:
1. Test reporting hooks (auto-capture results)
2. JWT tokens for each role
3. Isolated SQLite databases per test
4. Fake OpenAI client and mock transports for Polar, Resend and Sanity
5. FastAPI test client
6. Test metadata decorator
"""
import os
import json
from datetime import datetime, timedelta, timezone
from functools import wraps
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, Any, List, Callable, Optional

# Must be set before tekbreed.config is imported
TEST_JWT_SECRET = "tekbreed-test-secret-0123456789"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET_KEY"] = TEST_JWT_SECRET
os.environ["SCHEDULER_ENABLED"] = "false"

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from case_reporter import CaseResult, CaseStep, get_reporter, reset_reporter

from tekbreed.api import websocket_routes
from tekbreed.config import Config
from tekbreed.database import app_db, audit_log_db, rag_db
from tekbreed.services import (
    cms_client,
    content_service,
    email_client,
    polar_client,
    profile_service,
    rag_service,
    scheduler,
    subscription_service,
)
from tekbreed.utils import audit_logger


# ══════════════════════════════════════════════════════════════════════════════
# TEST METADATA STORAGE
# ══════════════════════════════════════════════════════════════════════════════

_test_metadata: Dict[str, Dict[str, Any]] = {}


def test_case(
    test_id: str,
    priority: str = "Medium",
    module: str = "Unknown",
    title: str = "",
    description: str = "",
    precondition: str = "",
    steps: List[Dict[str, str]] = None
):
    """
    Decorator to attach test case metadata to a test function.

    Usage:
        @test_case(
            test_id="TC-CONTENT-001",
            priority="High",
            module="Content",
            title="Add comment",
            precondition="User is authenticated",
            steps=[
                {"step": "POST a comment", "expected": "201 with comment id"},
            ]
        )
        def test_add_comment(client, user_headers):
            ...
    """
    def decorator(func):
        _test_metadata[func.__name__] = {
            "test_id": test_id,
            "priority": priority,
            "module": module,
            "title": title or func.__name__.replace("test_", "").replace("_", " ").title(),
            "description": description or func.__doc__ or "",
            "precondition": precondition,
            "steps": steps or []
        }

        @wraps(func)
        def wrapper(*args, **kwargs):
            return func(*args, **kwargs)

        wrapper._test_metadata = _test_metadata[func.__name__]
        return wrapper

    return decorator


# Not a test itself
test_case.__test__ = False


def get_test_metadata(test_name: str) -> Dict[str, Any]:
    return _test_metadata.get(test_name, {
        "test_id": f"TC-{test_name.upper()[:8]}",
        "priority": "Medium",
        "module": "Unknown",
        "title": test_name.replace("test_", "").replace("_", " ").title(),
        "description": "",
        "precondition": "",
        "steps": []
    })


# ══════════════════════════════════════════════════════════════════════════════
# PYTEST HOOKS FOR AUTO-REPORTING
# ══════════════════════════════════════════════════════════════════════════════

@pytest.hookimpl(tryfirst=True)
def pytest_configure(config):
    reset_reporter()
    print("\n" + "="*70)
    print("🧪 TekBreed Test Suite")
    print(f"📅 Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("="*70 + "\n")


@pytest.hookimpl(trylast=True)
def pytest_unconfigure(config):
    reporter = get_reporter()

    if reporter.results:
        output_dir = Path(__file__).parent.parent / "test_results"
        reports = reporter.export_all(str(output_dir))

        summary = reports["summary"]
        print("\n" + "="*70)
        print("📊 TEST EXECUTION SUMMARY")
        print("="*70)
        print(f"  Total:   {summary['total']}")
        print(f"  ✅ Passed:  {summary['passed']}")
        print(f"  ❌ Failed:  {summary['failed']}")
        print(f"  ⏭️ Skipped: {summary['skipped']}")
        print(f"  📈 Pass Rate: {summary['pass_rate']}")
        print("="*70)
        print(f"  📄 JSON: {reports['json']}")
        print(f"  📊 CSV:  {reports['csv']}")
        if reports['failures']:
            print(f"  ⚠️ Failure logs: {len(reports['failures'])} files")
        print("="*70 + "\n")


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """Capture the call phase of every test into the case reporter."""
    outcome = yield
    report = outcome.get_result()

    if report.when != "call":
        return

    metadata = get_test_metadata(item.name)
    function = getattr(item, "function", None)
    if hasattr(function, '_test_metadata'):
        metadata = function._test_metadata

    if report.passed:
        status = "PASS"
    elif report.failed:
        status = "FAIL"
    elif report.skipped:
        status = "SKIP"
    else:
        status = "ERROR"

    error_message = ""
    stack_trace = ""
    if report.failed and hasattr(report.longrepr, 'reprcrash') and report.longrepr.reprcrash:
        error_message = str(report.longrepr.reprcrash.message)
        stack_trace = str(report.longrepr)

    steps = [
        CaseStep(
            step_number=i,
            description=step_info.get("step", ""),
            expected_result=step_info.get("expected", "")
        )
        for i, step_info in enumerate(metadata.get("steps", []), 1)
    ]

    get_reporter().add_result(CaseResult(
        case_id=metadata["test_id"],
        priority=metadata["priority"],
        module=metadata["module"],
        title=metadata["title"],
        description=metadata["description"],
        precondition=metadata["precondition"],
        steps=steps,
        status=status,
        error_message=error_message,
        stack_trace=stack_trace,
        execution_time_ms=report.duration * 1000,
        executed_at=datetime.now().isoformat()
    ))


# ══════════════════════════════════════════════════════════════════════════════
# FAKE EXTERNAL SERVICES
# ══════════════════════════════════════════════════════════════════════════════

EMBEDDING_VOCABULARY = ("python", "fastapi", "docker", "deploy", "react", "testing", "database", "css")


def fake_embedding(text: str) -> List[float]:
    """Bag-of-words vector over a small vocabulary, so related texts score higher."""
    words = [word.strip(".,?!:;()").lower() for word in text.split()]
    vector = [float(words.count(term)) for term in EMBEDDING_VOCABULARY]
    vector.append(0.1)
    return vector


class FakeOpenAI:
    """Stands in for openai.OpenAI: embeddings.create and chat.completions.create."""

    def __init__(self):
        self.answer = "Build the image and run it with **docker compose up**."
        self.stream_parts = ["Build the image ", "and run it ", "with docker compose up."]
        self.usage = {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150}
        self.chat_error: Optional[Exception] = None
        self.embedding_error: Optional[Exception] = None
        self.embedding_calls: List[str] = []
        self.chat_calls: List[Dict[str, Any]] = []
        self.embeddings = SimpleNamespace(create=self._create_embedding)
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create_completion))

    def _create_embedding(self, model: str, input: str, encoding_format: str = "float"):
        if self.embedding_error:
            raise self.embedding_error
        self.embedding_calls.append(input)
        return SimpleNamespace(data=[SimpleNamespace(embedding=fake_embedding(input))], model=model)

    def _create_completion(self, model: str, messages: List[Dict[str, str]], stream: bool = False, **kwargs):
        self.chat_calls.append({"model": model, "messages": messages, "stream": stream, **kwargs})
        if self.chat_error:
            raise self.chat_error

        usage = SimpleNamespace(**self.usage)
        if stream:
            chunks = [
                SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=part))], usage=None, model=model)
                for part in self.stream_parts
            ]
            chunks.append(SimpleNamespace(choices=[], usage=usage, model=model))
            return iter(chunks)

        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.answer))],
            usage=usage,
            model=model
        )


class FakeHTTPService:
    """Canned responses for one external HTTP API, served through httpx.MockTransport."""

    def __init__(self):
        self.routes: Dict[tuple, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def respond(self, method: str, path: str, body: Any = None, status_code: int = 200, handler=None):
        self.routes[(method.upper(), path)] = handler or (lambda request: httpx.Response(status_code, json=body))

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"detail": f"No route for {request.method} {request.url.path}"})
        return route(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._dispatch)

    def last_json(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content)


SANITY_QUERY_PATH = "/v2024-01-01/data/query/production"


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def polar_api() -> FakeHTTPService:
    """Polar sandbox API; paths carry the /v1 prefix."""
    return FakeHTTPService()


@pytest.fixture
def resend_api() -> FakeHTTPService:
    return FakeHTTPService()


@pytest.fixture
def sanity_api() -> FakeHTTPService:
    return FakeHTTPService()


# ══════════════════════════════════════════════════════════════════════════════
# ISOLATION
# ══════════════════════════════════════════════════════════════════════════════

SINGLETONS = [
    (app_db, "_app_db"),
    (rag_db, "_rag_db"),
    (audit_log_db, "_audit_log_storage"),
    (audit_logger, "_audit_logger"),
    (content_service, "_content_service"),
    (profile_service, "_profile_service"),
    (scheduler, "_scheduler"),
]


@pytest.fixture(autouse=True)
def isolated_backend(tmp_path, monkeypatch, fake_openai, polar_api, resend_api, sanity_api):
    """Fresh databases, singletons and in-memory metrics for every test."""
    monkeypatch.setattr(Config, "APP_DB_PATH", str(tmp_path / "tekbreed.db"))
    monkeypatch.setattr(Config, "AUDIT_LOG_DB_PATH", str(tmp_path / "audit_logs.db"))
    monkeypatch.setattr(Config, "RAG_DB_PATH", str(tmp_path / "rag.db"))
    monkeypatch.setattr(Config, "LOG_ARCHIVE_DIR", str(tmp_path / "archives"))
    monkeypatch.setattr(Config, "JWT_SECRET_KEY", TEST_JWT_SECRET)
    monkeypatch.setattr(Config, "POLAR_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(Config, "DOMAIN_URL", "https://tekbreed.test")
    monkeypatch.setattr(Config, "SCHEDULER_ENABLED", False)

    for module, attribute in SINGLETONS:
        monkeypatch.setattr(module, attribute, None)

    monkeypatch.setattr(rag_service, "_rag_service", rag_service.RagService(client=fake_openai, embedding_delay=0))
    monkeypatch.setattr(polar_client, "_polar_client", polar_client.PolarClient(
        access_token="polar-test-token", server="sandbox", transport=polar_api.transport
    ))
    monkeypatch.setattr(email_client, "_email_client", email_client.EmailClient(
        api_key="re_test", audience_id="aud_test", transport=resend_api.transport
    ))
    monkeypatch.setattr(cms_client, "_cms_client", cms_client.CMSClient(
        project_id="tekbreed", dataset="production", api_version="2024-01-01", transport=sanity_api.transport
    ))
    monkeypatch.setattr(subscription_service, "_subscription_service", subscription_service.SubscriptionService(
        sleep=lambda seconds: None
    ))
    monkeypatch.setattr(subscription_service, "_webhook_metrics", {
        "total_received": 0, "successful": 0, "failed": 0, "last_processed_at": None,
    })
    monkeypatch.setattr(subscription_service, "_portal_metrics", {
        "total_accesses": 0, "successful_accesses": 0, "failed_accesses": 0, "last_accessed_at": None,
    })
    monkeypatch.setattr(scheduler, "_cron_jobs", scheduler._default_jobs())
    monkeypatch.setattr(websocket_routes.manager, "connections", {})
    yield


# ══════════════════════════════════════════════════════════════════════════════
# JWT TOKEN FIXTURES
# ══════════════════════════════════════════════════════════════════════════════

# whsec_ + base64("tekbreed-webhook-secret")
TEST_WEBHOOK_SECRET = "whsec_dGVrYnJlZWQtd2ViaG9vay1zZWNyZXQ="

ADMIN_ID = "admin-0001"
MODERATOR_ID = "moderator-0001"
USER_ID = "user-0001"
OTHER_USER_ID = "user-0002"


def create_test_jwt(
    user_id: str = USER_ID,
    role: str = "user",
    name: str = "Test User",
    email: str = "learner@tekbreed.com",
    session_id: Optional[str] = None,
    expires_in_hours: int = 24
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "user_id": user_id,
        "role": role,
        "name": name,
        "email": email,
        "iat": now,
        "exp": now + timedelta(hours=expires_in_hours),
    }
    if session_id:
        payload["session_id"] = session_id
    return jwt.encode(payload, TEST_JWT_SECRET, algorithm="HS256")


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token() -> str:
    return create_test_jwt(ADMIN_ID, role="admin", name="Admin User", email="admin@tekbreed.com")


@pytest.fixture
def moderator_token() -> str:
    return create_test_jwt(MODERATOR_ID, role="moderator", name="Moderator User", email="moderator@tekbreed.com")


@pytest.fixture
def user_token() -> str:
    return create_test_jwt(USER_ID, role="user", name="Regular User", email="learner@tekbreed.com")


@pytest.fixture
def other_user_token() -> str:
    return create_test_jwt(OTHER_USER_ID, role="user", name="Other User", email="other@tekbreed.com")


@pytest.fixture
def expired_token() -> str:
    return create_test_jwt(expires_in_hours=-1)


@pytest.fixture
def invalid_token() -> str:
    return "invalid.token.here"


# ══════════════════════════════════════════════════════════════════════════════
# FASTAPI TEST CLIENT FIXTURES
# ══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def app():
    from tekbreed.app import create_app
    return create_app()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def user_headers(user_token):
    return bearer(user_token)


@pytest.fixture
def other_user_headers(other_user_token):
    return bearer(other_user_token)


@pytest.fixture
def admin_headers(admin_token):
    return bearer(admin_token)


@pytest.fixture
def moderator_headers(moderator_token):
    return bearer(moderator_token)
