"""
Pytest configuration for gitopsish_server. GitHub is replaced by an httpx.MockTransport stub
so no test touches the network.
"""
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from gitopsish_server.config import Settings
from gitopsish_server.main import create_app

TEST_TARGET = "igaskin"


class GitHubStub:
    """Callable for httpx.MockTransport; records every request it sees."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.token_body = "access_token=tkn&scope=read%3Auser&token_type=bearer"
        self.token_exc: Exception | None = None
        self.following_status = 204
        self.following_exc: Exception | None = None
        self.user_status = 200
        self.user_json: dict | None = {"login": "alice"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path
        if host == "github.com" and path == "/login/oauth/access_token":
            if self.token_exc is not None:
                raise self.token_exc
            return httpx.Response(
                self.token_status,
                text=self.token_body,
                headers={"content-type": "application/x-www-form-urlencoded"},
            )
        if host == "api.github.com" and path.startswith("/user/following/"):
            if self.following_exc is not None:
                raise self.following_exc
            return httpx.Response(self.following_status)
        if host == "api.github.com" and path == "/user":
            return httpx.Response(self.user_status, json=self.user_json)
        return httpx.Response(500)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def make_settings(**overrides) -> Settings:
    values = {
        "client_id": "TESTID",
        "client_secret": "TESTSECRET",
        "target_account": TEST_TARGET,
        "redirect_uri": "http://localhost:9999/callback",
        "scopes": "read:user",
    }
    values.update(overrides)
    return Settings(**values)


def state_from_location(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Settings read the process environment; start every test without any of its keys set."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)


@pytest.fixture
def github_stub():
    return GitHubStub()


@pytest.fixture
def app(github_stub):
    return create_app(make_settings(), transport=httpx.MockTransport(github_stub))


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def issued_state(client):
    """A state obtained through GET / (scenario S1)."""
    r = client.get("/", follow_redirects=False)
    assert r.status_code == 303
    return state_from_location(r.headers["location"])


@pytest.fixture
def settings_factory():
    return make_settings
