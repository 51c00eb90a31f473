"""
Authorization request helpers: state generation and the GitHub authorize URL.
"""
import secrets
from urllib.parse import urlencode

# 32 bytes -> 43 chars base64url, 256 bits of entropy
STATE_BYTES = 32

# Provider error codes whose meaning is safe to echo back to the user
PROVIDER_ERROR_MESSAGES = {
    "access_denied": "access denied: the authorization request was declined",
    "bad_verification_code": "bad verification code: the code passed is incorrect or expired",
    "incorrect_client_credentials": "incorrect client credentials",
    "redirect_uri_mismatch": "redirect uri mismatch",
    "unverified_user_email": "the user must verify their primary email first",
    "application_suspended": "the application has been suspended",
}
GENERIC_DECLINE_MESSAGE = "authorization was declined by the provider"

# Upper bound for provider-supplied strings before they reach a log or a body
MAX_PROVIDER_TEXT = 200


def generate_state() -> str:
    """Opaque value for CSRF protection; returned in callback."""
    return secrets.token_urlsafe(STATE_BYTES)


def build_authorize_url(
    *,
    github_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
) -> str:
    """Build GitHub /login/oauth/authorize URL."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
    }
    return f"{github_url}/login/oauth/authorize?{urlencode(params)}"


def cap(text: str | None, limit: int = MAX_PROVIDER_TEXT) -> str:
    if not text:
        return ""
    text = "".join(ch for ch in text if ch.isprintable())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def describe_provider_error(error: str | None) -> str:
    """User-facing text for a provider error code; unknown codes get a generic message."""
    return PROVIDER_ERROR_MESSAGES.get((error or "").strip(), GENERIC_DECLINE_MESSAGE)
