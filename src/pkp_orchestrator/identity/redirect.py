"""
pkp_orchestrator.identity.redirect

Login gateway redirect handling.

Responsibilities:
- Build the provider login URL with the app's return address.
- Detect an inbound redirect callback and extract the identity assertion from it.
"""

from __future__ import annotations

import secrets
from urllib.parse import parse_qs, urlencode, urlsplit

from pkp_orchestrator.errors import MissingAssertionError
from pkp_orchestrator.models import IdentityAssertion

# Any of these on the return address marks the navigation as a login callback.
_CALLBACK_PARAMS = ("provider", "id_token", "access_token", "error")


def new_login_state() -> str:
    # CSRF nonce echoed back by the gateway in the `state` parameter.
    return secrets.token_urlsafe(24)


class IdentityRedirectHandler:
    def __init__(self, *, login_base_url: str, provider: str) -> None:
        self._login_base_url = login_base_url.rstrip("/")
        self._provider = provider

    @property
    def provider(self) -> str:
        return self._provider

    def build_login_url(self, return_uri: str, *, state: str | None = None) -> str:
        params = {"app_redirect": return_uri}
        if state is not None:
            params["state"] = state
        return f"{self._login_base_url}/auth/{self._provider}?{urlencode(params)}"

    def is_redirect_callback(self, location: str, return_uri: str) -> bool:
        if not _targets(location, return_uri):
            return False
        params = _callback_params(location)
        return any(params.get(k) is not None for k in _CALLBACK_PARAMS)

    def extract_assertion(
        self,
        location: str,
        return_uri: str,
        *,
        expected_state: str | None = None,
    ) -> IdentityAssertion:
        if not self.is_redirect_callback(location, return_uri):
            raise MissingAssertionError("Location is not a login redirect callback")

        params = _callback_params(location)
        if params.get("error"):
            raise MissingAssertionError(f"Login gateway reported an error: {params['error']}")
        if expected_state is not None and params.get("state") != expected_state:
            raise MissingAssertionError("Login callback state does not match the pending login")

        provider = params.get("provider") or self._provider
        # Google returns an OIDC id_token; other providers hand back an OAuth access token.
        token = params.get("id_token") or params.get("access_token")
        if token is None or not token.strip():
            raise MissingAssertionError(f"No identity token found in {provider} callback")
        if any(ch.isspace() for ch in token):
            raise MissingAssertionError("Identity token is malformed")
        return IdentityAssertion(token=token, issued_for=provider)


def _targets(location: str, return_uri: str) -> bool:
    loc = urlsplit(location)
    ret = urlsplit(return_uri)
    if (loc.scheme, loc.netloc) != (ret.scheme, ret.netloc):
        return False
    return loc.path.rstrip("/").startswith(ret.path.rstrip("/"))


def _callback_params(location: str) -> dict[str, str]:
    parts = urlsplit(location)
    out: dict[str, str] = {}
    # Fragment first so query parameters win on collision.
    for raw in (parts.fragment, parts.query):
        for key, values in parse_qs(raw, keep_blank_values=True).items():
            out[key] = values[0]
    return out


# --- Module Notes -----------------------------------------------------------
# Clearing the callback parameters from the address bar is the caller's job.
