"""Shared fixtures: settings, connections, an in-memory store and provider fakes."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httplib2
import httpx
import pytest
from googleapiclient.errors import HttpError

from mail_driver.config import DriverSettings, OAuthClientSettings
from mail_driver.providers.base import DriverConfig
from mail_driver.storage import ConnectionRecord, ConnectionStore


# ---------------------------------------------------------------------------
# Settings and connections
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> DriverSettings:
    return DriverSettings(
        google=OAuthClientSettings("google-client", "google-secret", "http://localhost/google/callback"),
        microsoft=OAuthClientSettings("ms-client", "ms-secret", "http://localhost/microsoft/callback"),
        microsoft_tenant="common",
        request_timeout=5.0,
        token_refresh_skew=60,
    )


def make_connection(provider_id: str, **overrides: Any) -> ConnectionRecord:
    fields = dict(
        id=f"conn-{provider_id}",
        user_id="user-1",
        provider_id=provider_id,
        access_token="access-123",
        refresh_token="refresh-456",
        scope="mail",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        email="alice@example.com",
        name="Alice",
    )
    fields.update(overrides)
    return ConnectionRecord(**fields)


class RecordingStore(ConnectionStore):
    """In-memory store that remembers every write."""

    def __init__(self, *records: ConnectionRecord):
        self.records = {r.id: r for r in records}
        self.updates: List[Tuple[str, Dict[str, Any]]] = []
        self.deletes: List[str] = []

    def find(self, user_id, connection_id):
        record = self.records.get(connection_id)
        return record if record and record.user_id == user_id else None

    def update(self, connection_id, **token_fields):
        self.updates.append((connection_id, token_fields))
        if connection_id not in self.records:
            return False
        self.records[connection_id] = self.records[connection_id].with_tokens(**token_fields)
        return True

    def delete(self, connection_id):
        self.deletes.append(connection_id)
        return self.records.pop(connection_id, None) is not None


@pytest.fixture
def google_connection() -> ConnectionRecord:
    return make_connection("google")


@pytest.fixture
def microsoft_connection() -> ConnectionRecord:
    return make_connection("microsoft")


@pytest.fixture
def google_store(google_connection) -> RecordingStore:
    return RecordingStore(google_connection)


@pytest.fixture
def microsoft_store(microsoft_connection) -> RecordingStore:
    return RecordingStore(microsoft_connection)


@pytest.fixture
def google_config(google_connection, settings, google_store) -> DriverConfig:
    return DriverConfig(connection=google_connection, settings=settings, store=google_store)


@pytest.fixture
def microsoft_config(microsoft_connection, settings, microsoft_store) -> DriverConfig:
    return DriverConfig(connection=microsoft_connection, settings=settings, store=microsoft_store)


# ---------------------------------------------------------------------------
# Gmail API fake
# ---------------------------------------------------------------------------


def http_error(status: int, reason: str = "backendError", message: Optional[str] = None) -> HttpError:
    """Build an HttpError the way googleapiclient raises it."""
    content = json.dumps({
        "error": {
            "code": status,
            "message": message or reason,
            "errors": [{"reason": reason, "message": message or reason}],
        }
    }).encode("utf-8")
    return HttpError(httplib2.Response({"status": status}), content)


class FakeRequest:
    """Stands in for googleapiclient.http.HttpRequest."""

    def __init__(self, service: "FakeGmailService", method: str, kwargs: Dict[str, Any]):
        self.service = service
        self.method = method
        self.kwargs = kwargs

    def execute(self):
        return self.service.dispatch(self.method, self.kwargs)


class FakeResource:
    """Resource node: attribute calls extend the method path."""

    def __init__(self, service: "FakeGmailService", path: Tuple[str, ...] = ()):
        self._service = service
        self._path = path

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        def call(**kwargs):
            path = self._path + (name,)
            if kwargs:
                return FakeRequest(self._service, ".".join(path), kwargs)
            return FakeResource(self._service, path)

        return call


class FakeBatch:
    def __init__(self, callback: Callable):
        self.callback = callback
        self.requests: List[Tuple[str, FakeRequest]] = []

    def add(self, request, callback=None, request_id=None):
        self.requests.append((request_id, request))

    def execute(self):
        for request_id, request in self.requests:
            try:
                response = request.execute()
            except HttpError as e:
                self.callback(request_id, None, e)
            else:
                self.callback(request_id, response, None)


class FakeGmailService(FakeResource):
    """
    In-memory Gmail service.

    Register handlers by dotted method path, e.g.
    ``service.on("users.threads.list", lambda **kw: {...})``.
    """

    def __init__(self):
        super().__init__(self)
        self.handlers: Dict[str, Callable] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.batches: List[FakeBatch] = []

    def on(self, method: str, handler: Callable) -> "FakeGmailService":
        self.handlers[method] = handler
        return self

    def dispatch(self, method: str, kwargs: Dict[str, Any]):
        self.calls.append((method, kwargs))
        if method not in self.handlers:
            raise AssertionError(f"Unexpected Gmail call {method}({kwargs})")
        return self.handlers[method](**kwargs)

    def new_batch_http_request(self, callback=None):
        batch = FakeBatch(callback)
        self.batches.append(batch)
        return batch

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]


@pytest.fixture
def gmail_service() -> FakeGmailService:
    return FakeGmailService()


# ---------------------------------------------------------------------------
# Microsoft Graph fake
# ---------------------------------------------------------------------------


class GraphMock:
    """
    Routes httpx requests by (method, path below /v1.0).

    A route is either a static (status, json) pair or a callable taking the
    request and returning an httpx.Response.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, status: int = 200, json: Any = None, handler: Optional[Callable] = None):
        self.routes[(method, path)] = handler or (status, json)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/v1.0"):
            path = path[len("/v1.0"):]
        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound", "message": f"No route {path}"}})
        if callable(route):
            return route(request)
        status, body = route
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self) -> List[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]

    def batch_bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith("/$batch")]


def batch_ok(request: httpx.Request, status: int = 200, body: Any = None) -> httpx.Response:
    """Answer every sub-request of a $batch call with the same status."""
    payload = json.loads(request.content)
    return httpx.Response(200, json={
        "responses": [
            {"id": item["id"], "status": status, "body": body or {}}
            for item in payload["requests"]
        ]
    })


@pytest.fixture
def graph() -> GraphMock:
    return GraphMock()
