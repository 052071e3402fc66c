import pathlib
import sys
from datetime import UTC, datetime, timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from review_exchange.main import create_app, job_queue
from review_exchange.notifications import LoggingNotifier
from review_exchange.selection import ReviewerSelector
from review_exchange.settings import EngineSettings
from review_exchange.store import InMemoryStore, store

INTERNAL_TOKEN = "internal_test_token"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def issue_token(*, account_id: str, roles: list[str] | None = None, secret: str = "jwt_test_secret") -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": account_id,
        "roles": roles or [],
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    """Signs /api/v1 requests as the account named by the ``as_account`` kwarg."""

    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, *, as_account: str = "acct_default", roles=None, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/internal/"):
            headers.setdefault("x-internal-token", INTERNAL_TOKEN)
        elif url.startswith("/api/v1/") and "Authorization" not in headers:
            token = issue_token(account_id=as_account, roles=roles, secret=self._jwt_secret)
            headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)


def seed_review_history(engine: InMemoryStore, account_id: str) -> None:
    """Record a past review by account_id so it passes the first-review gate."""
    owner_id = f"seed_owner_{account_id}"

    def _op() -> None:
        engine._persist_relationship(
            relationship={
                "relationship_id": engine._new_id("rel"),
                "reviewer_account_id": account_id,
                "owner_account_id": owner_id,
                "item_id": None,
                "assignment_id": None,
                "created_at": engine._utcnow_iso(),
            }
        )

    engine._run_in_transaction(_op)


def add_credits(engine: InMemoryStore, account_id: str, amount: int) -> None:
    engine.append_ledger_entry(account_id=account_id, amount=amount, kind="earned", description="Test grant")


def queue_item(engine: InMemoryStore, owner_id: str, name: str, *, tier: str = "standard") -> dict:
    """Create an owner ready to submit and put one item in the queue."""
    if owner_id not in engine.accounts:
        engine.upsert_account(account_id=owner_id, tier=tier, qualified=False)
        seed_review_history(engine, owner_id)
    if engine.get_balance(account_id=owner_id) < 1:
        add_credits(engine, owner_id, 1)
    item = engine.create_item(owner_account_id=owner_id, name=name)
    return engine.submit_item_to_queue(account_id=owner_id, item_id=item["item_id"])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=UTC))


@pytest.fixture
def make_store(clock: FakeClock):
    def _make(**settings_overrides) -> InMemoryStore:
        return InMemoryStore(
            settings=EngineSettings(**settings_overrides),
            notifier=LoggingNotifier(),
            selector=ReviewerSelector.seeded(7),
            clock=clock,
        )

    return _make


@pytest.fixture(autouse=True)
def reset_store(clock: FakeClock, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", "jwt_test_secret")
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    monkeypatch.setenv("REX_INTERNAL_TOKEN", INTERNAL_TOKEN)
    monkeypatch.setattr(store, "clock", clock)
    monkeypatch.setattr(store, "selector", ReviewerSelector.seeded(7))
    store.reset()
    job_queue.reset()
    yield


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret="jwt_test_secret")
