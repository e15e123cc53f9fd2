from __future__ import annotations

import base64
import binascii
import copy
import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.datastore_models import Entity
from services.errors import BadRequestError, StorageError


DATASTORE_LOGGER = logging.getLogger("gear_rental.datastore")

ID_FIELD = "id"
VERSION_FIELD = "_version"
_RESERVED_FIELDS = {ID_FIELD, VERSION_FIELD}

# Upper bound of the Integer EntityID column; larger ids cannot exist.
MAX_ENTITY_ID = 2**31 - 1


class InvalidCursorError(BadRequestError):
    message = "The pagination token is invalid."


class DuplicateKeyError(RuntimeError):
    pass


class StaleEntityError(RuntimeError):
    pass


class EntityMissingError(RuntimeError):
    pass


def _numeric_key(entity_id: Any) -> int | None:
    if isinstance(entity_id, bool):
        return None
    if isinstance(entity_id, int):
        numeric = entity_id
    else:
        raw = str(entity_id or "").strip()
        if not (raw.isascii() and raw.isdigit()):
            return None
        numeric = int(raw)
    if numeric > MAX_ENTITY_ID or numeric < 0:
        return None
    return numeric


def _key_clause(kind: str, entity_id: Any, named: bool):
    if named:
        return (Entity.Kind == kind) & (Entity.KeyName == str(entity_id))
    numeric = _numeric_key(entity_id)
    if numeric is None:
        return None
    return (Entity.Kind == kind) & (Entity.EntityID == numeric) & (Entity.KeyName.is_(None))


def _strip_reserved(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if key not in _RESERVED_FIELDS}


def _to_payload(row: Entity) -> dict[str, Any]:
    payload = copy.deepcopy(row.Payload or {})
    payload[ID_FIELD] = row.KeyName if row.KeyName is not None else row.EntityID
    payload[VERSION_FIELD] = row.Version
    return payload


def _filter_clause(field: str, value: Any):
    element = Entity.Payload[field]
    if value is None:
        return element.as_string().is_(None)
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, int):
        return element.as_integer() == value
    return element.as_string() == str(value)


def _select_entities():
    # Rows are rewritten with Core UPDATEs; never serve a stale identity-map copy.
    return select(Entity).execution_options(populate_existing=True)


def _kind_statement(kind: str, field: str | None = None, value: Any = None):
    stmt = _select_entities().where(Entity.Kind == kind)
    if field:
        stmt = stmt.where(_filter_clause(field, value))
    return stmt


def _raise_storage_error(db: Session, action: str, kind: str, exc: Exception) -> None:
    db.rollback()
    DATASTORE_LOGGER.error("Datastore %s failed kind=%s error=%s", action, kind, exc)
    raise StorageError() from exc


def encode_cursor(last_entity_id: int) -> str:
    body = json.dumps({"after": int(last_entity_id)}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(body).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> int:
    try:
        raw = base64.urlsafe_b64decode(cursor + "=" * (-len(cursor) % 4))
        decoded = json.loads(raw.decode("utf-8"))
        after = decoded["after"]
    except (binascii.Error, ValueError, UnicodeDecodeError, TypeError, KeyError) as exc:
        raise InvalidCursorError() from exc
    if isinstance(after, bool) or not isinstance(after, int) or not 0 <= after <= MAX_ENTITY_ID:
        raise InvalidCursorError()
    return after


def create_entity(db: Session, kind: str, data: dict[str, Any], key_name: str | None = None) -> dict[str, Any]:
    now = datetime.now()
    row = Entity(
        Kind=kind,
        KeyName=str(key_name) if key_name is not None else None,
        Payload=_strip_reserved(data),
        Version=1,
        CreatedDate=now,
        UpdatedDate=now,
    )
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
    except IntegrityError as exc:
        if key_name is None:
            _raise_storage_error(db, "create", kind, exc)
        db.rollback()
        raise DuplicateKeyError(f"{kind} {key_name} already exists") from exc
    except SQLAlchemyError as exc:
        _raise_storage_error(db, "create", kind, exc)
    return _to_payload(row)


def get_entity(db: Session, kind: str, entity_id: Any, named: bool = False) -> dict[str, Any] | None:
    clause = _key_clause(kind, entity_id, named)
    if clause is None:
        return None
    try:
        row = db.execute(_select_entities().where(clause)).scalars().first()
    except SQLAlchemyError as exc:
        _raise_storage_error(db, "get", kind, exc)
    return _to_payload(row) if row else None


def list_entities(db: Session, kind: str) -> list[dict[str, Any]]:
    try:
        rows = db.execute(_kind_statement(kind).order_by(Entity.EntityID)).scalars().all()
    except SQLAlchemyError as exc:
        _raise_storage_error(db, "list", kind, exc)
    return [_to_payload(row) for row in rows]


def list_filtered_entities(db: Session, kind: str, field: str, value: Any) -> list[dict[str, Any]]:
    try:
        rows = db.execute(_kind_statement(kind, field, value).order_by(Entity.EntityID)).scalars().all()
    except SQLAlchemyError as exc:
        _raise_storage_error(db, "query", kind, exc)
    return [_to_payload(row) for row in rows]


def count_entity_keys(db: Session, kind: str, field: str | None = None, value: Any = None) -> int:
    stmt = select(func.count(Entity.EntityID)).where(Entity.Kind == kind)
    if field:
        stmt = stmt.where(_filter_clause(field, value))
    try:
        return int(db.execute(stmt).scalar() or 0)
    except SQLAlchemyError as exc:
        _raise_storage_error(db, "count", kind, exc)


def page_entities(
    db: Session,
    kind: str,
    page_size: int,
    cursor: str | None = None,
    field: str | None = None,
    value: Any = None,
) -> tuple[list[dict[str, Any]], str | None]:
    size = max(1, int(page_size))
    stmt = _kind_statement(kind, field, value)
    if cursor:
        stmt = stmt.where(Entity.EntityID > decode_cursor(cursor))
    stmt = stmt.order_by(Entity.EntityID).limit(size + 1)
    try:
        rows = db.execute(stmt).scalars().all()
    except SQLAlchemyError as exc:
        _raise_storage_error(db, "page", kind, exc)

    has_more = len(rows) > size
    rows = rows[:size]
    next_cursor = encode_cursor(rows[-1].EntityID) if has_more and rows else None
    return [_to_payload(row) for row in rows], next_cursor


def replace_entity(db: Session, kind: str, record: dict[str, Any], named: bool = False) -> dict[str, Any]:
    """Overwrite the stored document with ``record``.

    When ``record`` carries the ``_version`` it was read with, the write only
    lands if nobody else wrote in between (``StaleEntityError`` otherwise).
    """
    entity_id = record.get(ID_FIELD)
    clause = _key_clause(kind, entity_id, named)
    if clause is None:
        raise EntityMissingError(f"{kind} {entity_id} has no usable key")

    payload = _strip_reserved(record)
    expected_version = record.get(VERSION_FIELD)
    stmt = update(Entity).where(clause)
    if expected_version is not None:
        stmt = stmt.where(Entity.Version == int(expected_version))
    stmt = stmt.values(Payload=payload, Version=Entity.Version + 1, UpdatedDate=datetime.now())

    try:
        result = db.execute(stmt.execution_options(synchronize_session=False))
        db.commit()
        current_version = db.execute(select(Entity.Version).where(clause)).scalar()
    except SQLAlchemyError as exc:
        _raise_storage_error(db, "replace", kind, exc)

    if current_version is None:
        raise EntityMissingError(f"{kind} {entity_id} no longer exists")
    if result.rowcount == 0:
        DATASTORE_LOGGER.info(
            "Version conflict kind=%s id=%s expected=%s current=%s",
            kind,
            entity_id,
            expected_version,
            current_version,
        )
        raise StaleEntityError(f"{kind} {entity_id} changed since version {expected_version}")

    stored = dict(payload)
    stored[ID_FIELD] = entity_id
    stored[VERSION_FIELD] = current_version
    return stored


def delete_entity(
    db: Session,
    kind: str,
    entity_id: Any,
    named: bool = False,
    expected_version: int | None = None,
) -> bool:
    clause = _key_clause(kind, entity_id, named)
    if clause is None:
        return False
    stmt = delete(Entity).where(clause)
    if expected_version is not None:
        stmt = stmt.where(Entity.Version == int(expected_version))
    try:
        result = db.execute(stmt.execution_options(synchronize_session=False))
        db.commit()
        if result.rowcount:
            return True
        still_there = expected_version is not None and db.execute(select(Entity.EntityID).where(clause)).first() is not None
    except SQLAlchemyError as exc:
        _raise_storage_error(db, "delete", kind, exc)

    if still_there:
        raise StaleEntityError(f"{kind} {entity_id} changed since version {expected_version}")
    return False
