"""
Outbound calls to GitHub: token exchange, follow check, current account.
One shared httpx.AsyncClient with a total timeout; redirects are never followed.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import parse_qs

import httpx

from gitopsish_server.config import GITHUB_API_URL, GITHUB_URL, ProviderCredentials
from gitopsish_server.oauth import build_authorize_url, cap

logger = logging.getLogger(__name__)

USER_AGENT = "gitopsish-server"

_CLIENT_SECRET_PARAM = re.compile(r"(client_secret=)[^&\s\"']*")


def redact_client_secret(text: str) -> str:
    return _CLIENT_SECRET_PARAM.sub(r"\1[REDACTED]", text)


class RedactClientSecret(logging.Filter):
    """Masks client_secret in logged request URLs and tracebacks."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if "client_secret=" in message:
            record.msg = redact_client_secret(message)
            record.args = ()
        if record.exc_info and not record.exc_text:
            record.exc_text = redact_client_secret(logging.Formatter().formatException(record.exc_info))
        return True


# The token exchange carries the secret in its query string
logging.getLogger("httpx").addFilter(RedactClientSecret())


class ExchangeError(Exception):
    """Token exchange did not yield an access token."""


class ProviderDeclined(ExchangeError):
    """GitHub answered the exchange with an error key (e.g. bad_verification_code)."""

    def __init__(self, error: str, description: str = "") -> None:
        self.error = cap(error)
        self.description = cap(description)
        super().__init__(self.error)


class ExchangeTransportError(ExchangeError):
    """Network failure, non-2xx status or unparseable body during exchange."""


class Relationship(str, Enum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Account:
    login: str


class GitHubClient:
    def __init__(
        self,
        credentials: ProviderCredentials,
        *,
        github_url: str = GITHUB_URL,
        api_url: str = GITHUB_API_URL,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.credentials = credentials
        self.github_url = github_url.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def build_authorize_url(self, state: str) -> str:
        return build_authorize_url(
            github_url=self.github_url,
            client_id=self.credentials.client_id,
            redirect_uri=self.credentials.redirect_uri,
            scope=self.credentials.scopes,
            state=state,
        )

    async def exchange(self, code: str, state: str) -> str:
        """
        Exchange an authorization code for an access token.
        Raises ProviderDeclined when GitHub returns an error key, ExchangeTransportError otherwise.
        """
        params = {
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            "code": code,
            "redirect_uri": self.credentials.redirect_uri,
            "state": state,
        }
        try:
            r = await self._http.post(f"{self.github_url}/login/oauth/access_token", params=params)
        except httpx.HTTPError as e:
            # str(e) may carry the request URL, which includes the client secret
            logger.warning("Token exchange request failed: %s", type(e).__name__)
            raise ExchangeTransportError(type(e).__name__) from e

        try:
            fields = parse_qs(r.text, keep_blank_values=True, strict_parsing=bool(r.text))
        except ValueError:
            fields = {}

        error = (fields.get("error") or [""])[0]
        if error:
            description = (fields.get("error_description") or [""])[0]
            logger.info("Token exchange declined by provider: %s", cap(error))
            raise ProviderDeclined(error, description)

        if not r.is_success:
            logger.warning("Token exchange returned HTTP %s", r.status_code)
            raise ExchangeTransportError(f"HTTP {r.status_code}")

        token = (fields.get("access_token") or [""])[0]
        if not token:
            logger.warning("Token exchange response had no access_token")
            raise ExchangeTransportError("malformed token response")
        return token

    def _auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"token {token}", "Accept": "application/vnd.github+json"}

    async def is_following(self, token: str, target: str, viewer: str = "self") -> Relationship:
        """204 -> YES, 404 -> NO, anything else (including network errors) -> UNKNOWN."""
        if viewer == "self":
            url = f"{self.api_url}/user/following/{target}"
        else:
            url = f"{self.api_url}/users/{viewer}/following/{target}"
        try:
            r = await self._http.get(url, headers=self._auth_headers(token))
        except httpx.HTTPError as e:
            logger.warning("Follow check failed: %s", type(e).__name__)
            return Relationship.UNKNOWN
        if r.status_code == 204:
            return Relationship.YES
        if r.status_code == 404:
            return Relationship.NO
        logger.warning("Follow check returned unexpected HTTP %s", r.status_code)
        return Relationship.UNKNOWN

    async def current_account(self, token: str) -> Account | None:
        """Login of the token's owner, or None if it cannot be fetched."""
        try:
            r = await self._http.get(f"{self.api_url}/user", headers=self._auth_headers(token))
        except httpx.HTTPError as e:
            logger.warning("Current account lookup failed: %s", type(e).__name__)
            return None
        if r.status_code != 200:
            logger.warning("Current account lookup returned HTTP %s", r.status_code)
            return None
        try:
            body = r.json()
        except ValueError:
            logger.warning("Current account lookup returned a non-JSON body")
            return None
        login = body.get("login") if isinstance(body, dict) else None
        if not isinstance(login, str) or not login:
            return None
        return Account(login=cap(login, 100))
