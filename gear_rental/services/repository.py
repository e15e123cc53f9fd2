from __future__ import annotations

import logging
import secrets
import time
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from services.datastore_service import (
    VERSION_FIELD,
    create_entity,
    count_entity_keys,
    delete_entity,
    get_entity,
    list_entities,
    list_filtered_entities,
    page_entities,
    replace_entity,
)


USERS = "users"
RENTALS = "rentals"
GEAR = "gear"
STATES = "states"

NAMED_KINDS = {USERS, STATES}

AUTH_LOGGER = logging.getLogger("gear_rental.auth")


def get_user(db: Session, subject: str) -> dict[str, Any] | None:
    return get_entity(db, USERS, subject, named=True)


def create_user(
    db: Session,
    subject: str,
    given_name: str,
    family_name: str,
    created_on: date | None = None,
) -> dict[str, Any]:
    data = {
        "First Name": given_name,
        "Last Name": family_name,
        "Date Created": (created_on or date.today()).isoformat(),
        "rentals": [],
    }
    return create_entity(db, USERS, data, key_name=subject)


def get_rental(db: Session, rental_id: Any) -> dict[str, Any] | None:
    return get_entity(db, RENTALS, rental_id)


def create_rental(db: Session, owner: str, fields: dict[str, Any]) -> dict[str, Any]:
    data = {
        "start": fields.get("start"),
        "end": fields.get("end"),
        "name": fields.get("name"),
        "user": owner,
        "gear": [],
    }
    return create_entity(db, RENTALS, data)


def list_rentals_for_user(db: Session, subject: str) -> list[dict[str, Any]]:
    return list_filtered_entities(db, RENTALS, "user", subject)


def get_gear(db: Session, gear_id: Any) -> dict[str, Any] | None:
    return get_entity(db, GEAR, gear_id)


def create_gear(db: Session, fields: dict[str, Any]) -> dict[str, Any]:
    data = {
        "item description": fields.get("item description"),
        "category": fields.get("category"),
        "available": True,
        "rental": None,
    }
    return create_entity(db, GEAR, data)


def list_kind(db: Session, kind: str) -> list[dict[str, Any]]:
    return list_entities(db, kind)


def save_record(db: Session, kind: str, record: dict[str, Any]) -> dict[str, Any]:
    return replace_entity(db, kind, record, named=kind in NAMED_KINDS)


def remove_record(db: Session, kind: str, record: dict[str, Any], check_version: bool = True) -> bool:
    expected_version = record.get(VERSION_FIELD) if check_version else None
    return delete_entity(db, kind, record["id"], named=kind in NAMED_KINDS, expected_version=expected_version)


def page_kind(
    db: Session,
    kind: str,
    page_size: int,
    cursor: str | None = None,
    field: str | None = None,
    value: Any = None,
) -> dict[str, Any]:
    # Counted before the page is read; the two queries are not one snapshot.
    total = count_entity_keys(db, kind, field, value)
    items, next_cursor = page_entities(db, kind, page_size, cursor=cursor, field=field, value=value)
    return {kind: items, "next": next_cursor, "total": total}


def create_auth_state(db: Session) -> str:
    token = secrets.token_urlsafe(32)
    create_entity(db, STATES, {"state": token, "createdAt": time.time()}, key_name=token)
    return token


def consume_auth_state(db: Session, token: str, ttl_seconds: int, now_ts: float | None = None) -> bool:
    """Read and delete one OAuth state. True only for a known, unexpired state."""
    if not token:
        return False
    record = get_entity(db, STATES, token, named=True)
    if not record:
        AUTH_LOGGER.warning("OAuth state rejected reason=unknown")
        return False
    if not delete_entity(db, STATES, token, named=True):
        AUTH_LOGGER.warning("OAuth state rejected reason=already_consumed")
        return False
    age = (now_ts if now_ts is not None else time.time()) - float(record.get("createdAt") or 0.0)
    if age > max(ttl_seconds, 1):
        AUTH_LOGGER.warning("OAuth state rejected reason=expired age=%s", int(age))
        return False
    return True


def purge_expired_auth_states(db: Session, ttl_seconds: int, now_ts: float | None = None) -> int:
    now = now_ts if now_ts is not None else time.time()
    removed = 0
    for record in list_entities(db, STATES):
        if now - float(record.get("createdAt") or 0.0) <= max(ttl_seconds, 1):
            continue
        if delete_entity(db, STATES, record["id"], named=True):
            removed += 1
    return removed
