"""
Authorization flow: GET / starts it, GET /callback finishes it, GET /are-you-ok reports liveness.

The callback is a short pipeline (validate state -> exchange code -> check follow -> respond);
the first failing stage produces the response and the rest are skipped.
"""
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

from gitopsish_server.config import ProviderCredentials
from gitopsish_server.github_client import (
    Account,
    ExchangeTransportError,
    GitHubClient,
    ProviderDeclined,
    RedactClientSecret,
    Relationship,
)
from gitopsish_server.oauth import cap, describe_provider_error
from gitopsish_server.state_store import (
    EntropyError,
    InvariantViolation,
    Outcome,
    Session,
    Stage,
    StateLedger,
)

logger = logging.getLogger(__name__)
logger.addFilter(RedactClientSecret())

INVALID_STATE = "invalid or expired state"
MISSING_CODE = "missing authorization code"
EXCHANGE_FAILED = "upstream token exchange failed"
RELATIONSHIP_UNKNOWN = "unable to determine relationship"
ABANDONED = "client disconnected; remaining upstream calls abandoned"
PERMISSION_DENIED = "permission denied"


@dataclass(frozen=True)
class FlowResponse:
    status_code: int
    body: str = ""
    location: str | None = None


class ClientDisconnected(Exception):
    """The browser went away before the callback finished."""


class FlowCoordinator:
    def __init__(self, ledger: StateLedger, github: GitHubClient, credentials: ProviderCredentials) -> None:
        self.ledger = ledger
        self.github = github
        self.credentials = credentials

    @property
    def follow_url(self) -> str:
        return f"{self.github.github_url}/{self.credentials.target_account}"

    def initiate(self) -> FlowResponse:
        """Issue a state and redirect the browser to GitHub. No provider call is made here."""
        try:
            state = self.ledger.issue()
        except (EntropyError, InvariantViolation) as e:
            return self._internal_error(e)
        url = self.github.build_authorize_url(state)
        logger.info("Authorization initiated; %d pending", len(self.ledger))
        return FlowResponse(status_code=303, location=url)

    async def callback(
        self,
        params: Mapping[str, str],
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> FlowResponse:
        # State is checked before anything else; an unknown state never reaches GitHub.
        state = params.get("state") or ""
        session = self.ledger.consume(state) if state else None
        if session is None:
            logger.info("Callback rejected: invalid or expired state")
            return FlowResponse(400, INVALID_STATE)

        try:
            return await self._run(session, params, is_disconnected)
        except ClientDisconnected:
            if session.outcome is None:
                session.finish(Outcome.ABANDONED)
            logger.info("Client disconnected during callback at stage %s", session.stage.value)
            return FlowResponse(502, ABANDONED)
        except Exception as e:
            return self._internal_error(e)

    async def _run(
        self,
        session: Session,
        params: Mapping[str, str],
        is_disconnected: Callable[[], Awaitable[bool]] | None,
    ) -> FlowResponse:
        async def checkpoint() -> None:
            if is_disconnected is not None and await is_disconnected():
                raise ClientDisconnected()

        session.advance(Stage.CALLBACK_RECEIVED)
        error = params.get("error")
        if error:
            session.finish(Outcome.EXCHANGE_FAILED)
            logger.info("Provider returned error on callback: %s", cap(error))
            return FlowResponse(400, describe_provider_error(error))

        code = params.get("code") or ""
        if not code:
            session.finish(Outcome.EXCHANGE_FAILED)
            logger.info("Callback without code or error")
            return FlowResponse(400, MISSING_CODE)
        session.code = code

        await checkpoint()
        try:
            token = await self.github.exchange(code, session.state)
        except ProviderDeclined as e:
            session.finish(Outcome.EXCHANGE_FAILED)
            return FlowResponse(400, describe_provider_error(e.error))
        except ExchangeTransportError:
            session.finish(Outcome.EXCHANGE_FAILED)
            return FlowResponse(502, EXCHANGE_FAILED)
        session.advance(Stage.CODE_EXCHANGED)
        logger.info("Successfully authenticated user")

        await checkpoint()
        target = self.credentials.target_account
        relationship = await self.github.is_following(token, target=target)
        if relationship is Relationship.UNKNOWN:
            session.finish(Outcome.LOOKUP_FAILED)
            return FlowResponse(502, RELATIONSHIP_UNKNOWN)
        session.advance(Stage.RELATIONSHIP_RESOLVED)

        await checkpoint()
        account = await self.github.current_account(token)
        if relationship is Relationship.YES:
            session.finish(Outcome.FOLLOWS)
            logger.info("%s is following %s", _login(account), target)
            return FlowResponse(200, self._acknowledgement(account))

        session.finish(Outcome.DOES_NOT_FOLLOW)
        logger.info("%s is not following %s", _login(account), target)
        return FlowResponse(412, self._invitation(account))

    def liveness(self, really: str | None = None) -> FlowResponse:
        if really == "true":
            return FlowResponse(401, PERMISSION_DENIED)
        return FlowResponse(200, "ok")

    def _acknowledgement(self, account: Account | None) -> str:
        target = self.credentials.target_account
        if account is None:
            return f"thanks for following {target}!"
        return f"thanks for following {target}, {account.login}!"

    def _invitation(self, account: Account | None) -> str:
        target = self.credentials.target_account
        if account is None:
            return f"please follow {target} first here: {self.follow_url}"
        return f"{account.login}, please follow {target} first here: {self.follow_url}"

    def _internal_error(self, exc: Exception) -> FlowResponse:
        ref = uuid.uuid4().hex[:12]
        logger.error("Internal error ref=%s: %s", ref, exc, exc_info=exc)
        return FlowResponse(500, f"internal error (ref {ref})")


def _login(account: Account | None) -> str:
    return account.login if account else "unknown user"
