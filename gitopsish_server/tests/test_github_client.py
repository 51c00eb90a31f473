"""Tests for GitHubClient against a stubbed transport."""
import asyncio
import logging

import httpx
import pytest

from gitopsish_server.github_client import (
    Account,
    ExchangeTransportError,
    GitHubClient,
    ProviderDeclined,
    RedactClientSecret,
    Relationship,
)


@pytest.fixture
def gh(github_stub, settings_factory):
    settings = settings_factory()
    return GitHubClient(settings.credentials, transport=httpx.MockTransport(github_stub))


def test_build_authorize_url(gh):
    url = gh.build_authorize_url("abc")
    assert url.startswith("https://github.com/login/oauth/authorize?")
    assert "state=abc" in url
    assert "scope=read%3Auser" in url


def test_exchange_returns_token(gh, github_stub):
    assert asyncio.run(gh.exchange("good", "st")) == "tkn"
    assert github_stub.requests[0].method == "POST"


def test_exchange_provider_error(gh, github_stub):
    github_stub.token_body = "error=bad_verification_code&error_description=The+code+is+wrong"
    with pytest.raises(ProviderDeclined) as exc:
        asyncio.run(gh.exchange("bad", "st"))
    assert exc.value.error == "bad_verification_code"
    assert exc.value.description == "The code is wrong"


def test_exchange_error_key_wins_over_status(gh, github_stub):
    github_stub.token_status = 400
    github_stub.token_body = "error=incorrect_client_credentials"
    with pytest.raises(ProviderDeclined):
        asyncio.run(gh.exchange("c", "st"))


def test_exchange_non_2xx_without_error(gh, github_stub):
    github_stub.token_status = 503
    github_stub.token_body = "Service Unavailable"
    with pytest.raises(ExchangeTransportError):
        asyncio.run(gh.exchange("c", "st"))


def test_exchange_missing_token(gh, github_stub):
    github_stub.token_body = "token_type=bearer&access_token="
    with pytest.raises(ExchangeTransportError):
        asyncio.run(gh.exchange("c", "st"))


def test_exchange_network_error_hides_secret(gh, github_stub, caplog):
    github_stub.token_exc = httpx.ConnectTimeout("timed out")
    with pytest.raises(ExchangeTransportError) as exc:
        asyncio.run(gh.exchange("c", "st"))
    assert "TESTSECRET" not in str(exc.value)
    assert "TESTSECRET" not in caplog.text


def test_exchange_does_not_follow_redirects(gh, github_stub):
    github_stub.token_status = 302
    github_stub.token_body = ""
    with pytest.raises(ExchangeTransportError):
        asyncio.run(gh.exchange("c", "st"))
    assert len(github_stub.requests) == 1


@pytest.mark.parametrize(
    "status, expected",
    [(204, Relationship.YES), (404, Relationship.NO), (401, Relationship.UNKNOWN), (302, Relationship.UNKNOWN)],
)
def test_is_following_status_mapping(gh, github_stub, status, expected):
    github_stub.following_status = status
    assert asyncio.run(gh.is_following("tkn", target="igaskin")) is expected
    req = github_stub.requests[0]
    assert req.url.path == "/user/following/igaskin"
    assert req.headers["authorization"] == "token tkn"


def test_is_following_network_error(gh, github_stub):
    github_stub.following_exc = httpx.ReadTimeout("slow")
    assert asyncio.run(gh.is_following("tkn", target="igaskin")) is Relationship.UNKNOWN


def test_is_following_other_viewer(gh, github_stub):
    asyncio.run(gh.is_following("tkn", target="igaskin", viewer="octocat"))
    assert github_stub.requests[0].url.path == "/users/octocat/following/igaskin"


def test_current_account(gh):
    assert asyncio.run(gh.current_account("tkn")) == Account(login="alice")


def test_current_account_failure(gh, github_stub):
    github_stub.user_status = 401
    assert asyncio.run(gh.current_account("tkn")) is None


def test_current_account_without_login(gh, github_stub):
    github_stub.user_json = {"id": 1}
    assert asyncio.run(gh.current_account("tkn")) is None


def test_redact_filter_masks_secret_in_request_log():
    record = logging.LogRecord(
        "httpx", logging.INFO, __file__, 1,
        "HTTP Request: %s %s", ("POST", "https://github.com/x?client_id=a&client_secret=TESTSECRET&code=c"), None,
    )
    assert RedactClientSecret().filter(record) is True
    assert record.getMessage() == "HTTP Request: POST https://github.com/x?client_id=a&client_secret=[REDACTED]&code=c"
