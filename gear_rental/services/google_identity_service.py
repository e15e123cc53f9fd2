from __future__ import annotations

import json
import logging
import os
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from services.errors import IdentityProviderError


GOOGLE_AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}
GOOGLE_SCOPES = "openid profile"

HTTP_TIMEOUT_SECONDS = float(os.environ.get("GOOGLE_HTTP_TIMEOUT_SECONDS") or "10")
_JWKS_CACHE_TTL_SECONDS = int(os.environ.get("GOOGLE_JWKS_CACHE_SECONDS") or "3600")

IDENTITY_LOGGER = logging.getLogger("gear_rental.identity")

_JWKS_LOCK = threading.Lock()
_JWKS_CACHE: dict[str, Any] = {}
_JWKS_EXPIRES_AT = 0.0


class InvalidTokenError(RuntimeError):
    pass


@dataclass(frozen=True)
class IdentityClaims:
    subject: str
    given_name: str
    family_name: str


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _read_json(request: urllib.request.Request, what: str) -> dict[str, Any]:
    try:
        with urllib.request.urlopen(request, timeout=HTTP_TIMEOUT_SECONDS) as response:
            if response.status != 200:
                raise IdentityProviderError()
            payload = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        IDENTITY_LOGGER.warning("Google %s failed status=%s", what, exc.code)
        raise IdentityProviderError() from exc
    except urllib.error.URLError as exc:
        IDENTITY_LOGGER.warning("Google %s unreachable reason=%s", what, exc.reason)
        raise IdentityProviderError() from exc
    except TimeoutError as exc:
        IDENTITY_LOGGER.warning("Google %s timed out after %ss", what, HTTP_TIMEOUT_SECONDS)
        raise IdentityProviderError() from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        IDENTITY_LOGGER.warning("Google %s returned invalid JSON", what)
        raise IdentityProviderError() from exc
    if not isinstance(payload, dict):
        raise IdentityProviderError()
    return payload


def _fetch_signing_keys(force_refresh: bool = False) -> dict[str, Any]:
    global _JWKS_EXPIRES_AT
    now = time.time()
    with _JWKS_LOCK:
        if not force_refresh and _JWKS_CACHE and now < _JWKS_EXPIRES_AT:
            return dict(_JWKS_CACHE)

    request = urllib.request.Request(url=GOOGLE_JWKS_URL, method="GET")
    payload = _read_json(request, "jwks")
    if not isinstance(payload.get("keys"), list):
        raise IdentityProviderError()

    with _JWKS_LOCK:
        _JWKS_CACHE.clear()
        _JWKS_CACHE.update(payload)
        _JWKS_EXPIRES_AT = now + _JWKS_CACHE_TTL_SECONDS
        return dict(_JWKS_CACHE)


def _has_key(jwks: dict[str, Any], kid: str | None) -> bool:
    if not kid:
        return True
    return any(isinstance(key, dict) and key.get("kid") == kid for key in jwks.get("keys") or [])


def build_authorization_url(state: str) -> str:
    query = urllib.parse.urlencode(
        {
            "client_id": _require_env("GOOGLE_CLIENT_ID"),
            "redirect_uri": _require_env("GOOGLE_REDIRECT_URI"),
            "response_type": "code",
            "scope": GOOGLE_SCOPES,
            "state": state,
        }
    )
    return f"{GOOGLE_AUTH_ENDPOINT}?{query}"


def exchange_code(code: str) -> dict[str, Any]:
    body = urllib.parse.urlencode(
        {
            "code": code,
            "client_id": _require_env("GOOGLE_CLIENT_ID"),
            "client_secret": _require_env("GOOGLE_CLIENT_SECRET"),
            "redirect_uri": _require_env("GOOGLE_REDIRECT_URI"),
            "grant_type": "authorization_code",
        }
    ).encode("ascii")
    request = urllib.request.Request(
        url=GOOGLE_TOKEN_ENDPOINT,
        data=body,
        headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
        method="POST",
    )
    return _read_json(request, "token exchange")


def verify_id_token(token: str) -> IdentityClaims:
    """Check a Google ID token and return who it was issued to.

    Raises InvalidTokenError for anything wrong with the token itself and
    IdentityProviderError when Google's signing keys cannot be fetched.
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise InvalidTokenError(f"Malformed token: {exc}") from exc

    kid = header.get("kid") if isinstance(header, dict) else None
    jwks = _fetch_signing_keys()
    if not _has_key(jwks, kid):
        jwks = _fetch_signing_keys(force_refresh=True)

    try:
        claims = jwt.decode(
            token,
            jwks,
            algorithms=["RS256"],
            audience=_require_env("GOOGLE_CLIENT_ID"),
            options={"verify_at_hash": False},
        )
    except ExpiredSignatureError as exc:
        raise InvalidTokenError("Token has expired") from exc
    except JWTError as exc:
        raise InvalidTokenError(f"Token verification failed: {exc}") from exc

    if claims.get("iss") not in GOOGLE_ISSUERS:
        raise InvalidTokenError(f"Unexpected issuer: {claims.get('iss')}")
    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise InvalidTokenError("Token has no subject")
    return IdentityClaims(
        subject=subject,
        given_name=str(claims.get("given_name") or ""),
        family_name=str(claims.get("family_name") or ""),
    )


class GoogleIdentityVerifier:
    def authorization_url(self, state: str) -> str:
        return build_authorization_url(state)

    def exchange_code(self, code: str) -> dict[str, Any]:
        return exchange_code(code)

    def verify(self, token: str) -> IdentityClaims:
        return verify_id_token(token)


_VERIFIER = GoogleIdentityVerifier()


def get_identity_verifier() -> GoogleIdentityVerifier:
    return _VERIFIER
