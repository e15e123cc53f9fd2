"""Header, body and bearer-token checks that run ahead of every route.

Each route picks its own ``JsonRoute`` and ``BodyRule`` at registration, so
which keys are allowed or required never depends on the HTTP method at
runtime. The checks run in a fixed order: content type, accept, JSON body,
keys, values, then the bearer token.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Type

from fastapi import Depends, Header, Request
from pydantic import BaseModel, ValidationError

from schemas.gear import GearFields
from schemas.rentals import RentalFields
from schemas.users import UserFields
from services.errors import (
    INVALID_VALUES_MESSAGE,
    MALFORMED_JSON_MESSAGE,
    BadRequestError,
    NotAcceptableError,
    UnauthorizedError,
    UnsupportedMediaTypeError,
)
from services.google_identity_service import (
    GoogleIdentityVerifier,
    IdentityClaims,
    InvalidTokenError,
    get_identity_verifier,
)

AUTH_LOGGER = logging.getLogger("gear_rental.auth")

_JSON_RANGES = {"application/json", "application/*", "*/*"}


def _schema_keys(schema: Type[BaseModel]) -> frozenset[str]:
    return frozenset(info.alias or name for name, info in schema.model_fields.items())


@dataclass(frozen=True)
class BodyRule:
    schema: Type[BaseModel]
    required: tuple[str, ...] = ()
    non_null: tuple[str, ...] = ()
    allowed: frozenset[str] = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "allowed", _schema_keys(self.schema))

    def check(self, body: Any) -> dict[str, Any]:
        if not isinstance(body, dict):
            raise BadRequestError()
        if any(key not in self.allowed for key in body):
            raise BadRequestError()
        if any(body.get(key) is None for key in self.required):
            raise BadRequestError()
        if any(key in body and body[key] is None for key in self.non_null):
            raise BadRequestError(INVALID_VALUES_MESSAGE)
        try:
            parsed = self.schema.model_validate(body)
        except ValidationError as exc:
            raise BadRequestError(INVALID_VALUES_MESSAGE) from exc
        return parsed.model_dump(by_alias=True, exclude_unset=True, mode="json")


GEAR_CREATE = BodyRule(GearFields, required=("item description", "category"))
GEAR_REPLACE = BodyRule(GearFields, required=("item description", "category"))
GEAR_PATCH = BodyRule(GearFields, non_null=("item description", "category"))
RENTAL_CREATE = BodyRule(RentalFields, required=("start", "end"))
RENTAL_REPLACE = BodyRule(RentalFields, required=("start", "end"))
RENTAL_PATCH = BodyRule(RentalFields, non_null=("start", "end"))
USER_CREATE = BodyRule(UserFields)


def is_json_content_type(raw: str | None) -> bool:
    media_type = (raw or "").split(";", 1)[0].strip().lower()
    return media_type == "application/json"


def _quality(params: list[str]) -> float:
    for param in params:
        name, _, value = param.partition("=")
        if name.strip().lower() == "q":
            try:
                return float(value.strip())
            except ValueError:
                return 0.0
    return 1.0


def accepts_json(raw: str | None) -> bool:
    if raw is None or not raw.strip():
        return True
    for media_range in raw.split(","):
        parts = media_range.split(";")
        media_type = parts[0].strip().lower()
        if media_type in _JSON_RANGES and _quality(parts[1:]) > 0:
            return True
    return False


class JsonRoute:
    """FastAPI dependency guarding one route's headers and body.

    Returns the validated body (wire field names, ISO dates) or ``None`` when
    the route takes no body.
    """

    def __init__(self, body: BodyRule | None = None, content_type: bool = True, accept: bool = True):
        self.body = body
        self.content_type = content_type
        self.accept = accept

    async def __call__(self, request: Request) -> dict[str, Any] | None:
        if self.content_type and not is_json_content_type(request.headers.get("content-type")):
            raise UnsupportedMediaTypeError()
        if self.accept and not accepts_json(request.headers.get("accept")):
            raise NotAcceptableError()
        if self.body is None:
            return None

        raw = await request.body()
        if not raw.strip():
            payload: Any = {}
        else:
            try:
                payload = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise BadRequestError(MALFORMED_JSON_MESSAGE) from exc
        return self.body.check(payload)


def _bearer_token(authorization: str | None) -> str | None:
    scheme, _, token = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_identity(
    authorization: str | None = Header(None),
    verifier: GoogleIdentityVerifier = Depends(get_identity_verifier),
) -> IdentityClaims:
    token = _bearer_token(authorization)
    if token is None:
        raise UnauthorizedError()
    try:
        return verifier.verify(token)
    except InvalidTokenError as exc:
        AUTH_LOGGER.info("Bearer token rejected reason=%s", exc)
        raise UnauthorizedError() from exc
