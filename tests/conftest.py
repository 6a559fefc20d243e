import json

import pytest

from minflow import create_app

BASE_URL = "http://backend.test/api/v1"
AI_URL = "http://ai.test/extract"


class _FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class _FakeBackend:
    """Stands in for both the REST backend and the AI service.

    Responses queued for the same route are returned in order; the last one
    repeats.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, path, payload=None, status_code=200):
        self.routes.setdefault((method, path), []).append(_FakeResponse(status_code, payload))

    def ok(self, method, path, data=None, status_code=200):
        self.add(method, path, {"success": True, "data": data}, status_code)

    def fail(self, method, path, error=None, status_code=400):
        payload = {"success": False}
        if error is not None:
            payload["error"] = error
        self.add(method, path, payload, status_code)

    def request(self, method, url, **kwargs):
        path = url[len(BASE_URL):] if url.startswith(BASE_URL) else url
        self.calls.append({"method": method, "path": path, **kwargs})
        responses = self.routes.get((method, path))
        if not responses:
            raise AssertionError(f"Unexpected request: {method} {path}")
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]

    def requests_to(self, method, path):
        return [call for call in self.calls if call["method"] == method and call["path"] == path]


@pytest.fixture()
def backend():
    return _FakeBackend()


@pytest.fixture()
def app(backend):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "API_BASE_URL": BASE_URL,
        "API_TRANSPORT": backend,
        "AI_EXPENSE_API_KEY": "secret-key",
        "AI_EXPENSE_API_URL": AI_URL,
    })
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def sign_in(client):
    def _sign_in(user, token="token-1"):
        with client.session_transaction() as sess:
            sess["token"] = token
            sess["user"] = json.dumps(user)

    return _sign_in
