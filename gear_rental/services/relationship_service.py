"""Keeps Users, Rentals and Gear pointing at each other.

Every transition writes the authoritative record first, with a version check
against what the request read, and only then rewrites the denormalized
summaries held by the counterpart records. Nothing here is atomic: when a
later step fails the earlier writes stay committed, the gap is logged, and the
caller gets a BackendError (500) to re-query from.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.orm import Session

from services.datastore_service import DuplicateKeyError, EntityMissingError, StaleEntityError, get_entity
from services.errors import (
    GEAR_NOT_FOUND_MESSAGE,
    GEAR_NOT_FREE_MESSAGE,
    GEAR_NOT_RELATED_MESSAGE,
    RENTAL_NOT_FOUND_MESSAGE,
    BackendError,
    ConflictError,
    NotFoundError,
    VersionConflictError,
)
from services.gear_service import DESCRIPTION_FIELD, gear_summary
from services.google_identity_service import IdentityClaims
from services.rental_service import rental_summary, validate_rental_dates
from services.repository import (
    GEAR,
    NAMED_KINDS,
    RENTALS,
    USERS,
    create_rental as store_rental,
    create_user,
    get_gear,
    get_rental,
    get_user,
    list_kind,
    list_rentals_for_user,
    remove_record,
    save_record,
)

RELATIONSHIP_LOGGER = logging.getLogger("gear_rental.relationships")

SUMMARY_WRITE_ATTEMPTS = 3


@dataclass
class RelationshipContext:
    """What a relationship request has already loaded and authorized."""

    subject: str
    rental: dict[str, Any]
    gear: dict[str, Any] | None = None


def _save_authoritative(db: Session, kind: str, record: dict[str, Any], not_found_message: str) -> dict[str, Any]:
    try:
        return save_record(db, kind, record)
    except StaleEntityError as exc:
        raise VersionConflictError() from exc
    except EntityMissingError as exc:
        raise NotFoundError(not_found_message) from exc


def _rewrite_summary(
    db: Session,
    kind: str,
    entity_id: Any,
    mutate: Callable[[dict[str, Any]], bool],
) -> dict[str, Any] | None:
    """Re-read a counterpart and apply ``mutate`` until the write lands.

    ``mutate`` edits the record in place and returns False when there is
    nothing to change. Missing counterparts are skipped.
    """
    named = kind in NAMED_KINDS
    for attempt in range(1, SUMMARY_WRITE_ATTEMPTS + 1):
        record = get_entity(db, kind, entity_id, named=named)
        if record is None:
            RELATIONSHIP_LOGGER.warning("Summary target missing kind=%s id=%s", kind, entity_id)
            return None
        if not mutate(record):
            return record
        try:
            return save_record(db, kind, record)
        except StaleEntityError:
            RELATIONSHIP_LOGGER.info("Summary write raced kind=%s id=%s attempt=%s", kind, entity_id, attempt)
        except EntityMissingError:
            RELATIONSHIP_LOGGER.warning("Summary target vanished kind=%s id=%s", kind, entity_id)
            return None
    raise VersionConflictError()


def _log_partial(exc: BackendError, step: str, committed: str, **ids: Any) -> None:
    details = " ".join(f"{key}={value}" for key, value in ids.items())
    RELATIONSHIP_LOGGER.warning("Partial write step=%s committed=%s %s error=%s", step, committed, details, exc)


def ensure_user(db: Session, claims: IdentityClaims) -> tuple[dict[str, Any], bool]:
    existing = get_user(db, claims.subject)
    if existing:
        return existing, False
    try:
        created = create_user(db, claims.subject, claims.given_name, claims.family_name)
    except DuplicateKeyError:
        # Another request created the same subject first.
        existing = get_user(db, claims.subject)
        if existing is None:
            raise BackendError()
        return existing, False
    RELATIONSHIP_LOGGER.info("User created subject=%s", claims.subject)
    return created, True


def create_rental(db: Session, claims: IdentityClaims, fields: dict[str, Any]) -> dict[str, Any]:
    validate_rental_dates(fields)
    ensure_user(db, claims)
    rental = store_rental(db, claims.subject, fields)
    summary = rental_summary(rental)

    def _append(user: dict[str, Any]) -> bool:
        entries = user.setdefault("rentals", [])
        if any(entry.get("id") == summary["id"] for entry in entries):
            return False
        entries.append(summary)
        return True

    try:
        _rewrite_summary(db, USERS, claims.subject, _append)
    except BackendError as exc:
        _log_partial(exc, "list_under_owner", "rental", rental_id=rental["id"], subject=claims.subject)
        raise
    RELATIONSHIP_LOGGER.info("Rental created rental_id=%s subject=%s", rental["id"], claims.subject)
    return rental


def update_rental(db: Session, ctx: RelationshipContext, fields: dict[str, Any]) -> dict[str, Any]:
    existing = ctx.rental
    merged = dict(existing)
    merged.update(fields)
    merged["user"] = existing.get("user")
    merged["gear"] = list(existing.get("gear") or [])
    validate_rental_dates(merged)

    updated = _save_authoritative(db, RENTALS, merged, RENTAL_NOT_FOUND_MESSAGE)
    if updated.get("name") == existing.get("name"):
        return updated

    def _rename(user: dict[str, Any]) -> bool:
        changed = False
        for entry in user.get("rentals") or []:
            if entry.get("id") == updated["id"] and entry.get("name") != updated.get("name"):
                entry["name"] = updated.get("name")
                changed = True
        return changed

    try:
        _rewrite_summary(db, USERS, updated.get("user"), _rename)
    except BackendError as exc:
        _log_partial(exc, "rename_owner_summary", "rental", rental_id=updated["id"], subject=updated.get("user"))
        raise
    return updated


def update_gear(db: Session, gear: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    merged = dict(gear)
    merged.update(fields)
    merged["rental"] = gear.get("rental")
    merged["available"] = gear.get("rental") is None

    updated = _save_authoritative(db, GEAR, merged, GEAR_NOT_FOUND_MESSAGE)
    rental_id = updated.get("rental")
    if rental_id is None or updated.get(DESCRIPTION_FIELD) == gear.get(DESCRIPTION_FIELD):
        return updated

    def _describe(rental: dict[str, Any]) -> bool:
        changed = False
        for entry in rental.get("gear") or []:
            if entry.get("id") == updated["id"] and entry.get(DESCRIPTION_FIELD) != updated.get(DESCRIPTION_FIELD):
                entry[DESCRIPTION_FIELD] = updated.get(DESCRIPTION_FIELD)
                changed = True
        return changed

    try:
        _rewrite_summary(db, RENTALS, rental_id, _describe)
    except BackendError as exc:
        _log_partial(exc, "describe_rental_summary", "gear", gear_id=updated["id"], rental_id=rental_id)
        raise
    return updated


def attach_gear(db: Session, ctx: RelationshipContext) -> dict[str, Any]:
    gear = dict(ctx.gear or {})
    rental = ctx.rental
    if not gear.get("available") or gear.get("rental") is not None:
        raise ConflictError(GEAR_NOT_FREE_MESSAGE)

    gear["available"] = False
    gear["rental"] = rental["id"]
    attached = _save_authoritative(db, GEAR, gear, GEAR_NOT_FOUND_MESSAGE)
    summary = gear_summary(attached)

    def _append(record: dict[str, Any]) -> bool:
        entries = record.setdefault("gear", [])
        if any(entry.get("id") == summary["id"] for entry in entries):
            return False
        entries.append(summary)
        return True

    try:
        listed = _rewrite_summary(db, RENTALS, rental["id"], _append)
    except BackendError as exc:
        _log_partial(exc, "list_on_rental", "gear", gear_id=attached["id"], rental_id=rental["id"])
        raise
    if listed is None:
        # The rental was deleted between the checks and the gear write.
        _release_gear(db, attached["id"], rental["id"])
        raise NotFoundError(RENTAL_NOT_FOUND_MESSAGE)
    RELATIONSHIP_LOGGER.info(
        "Gear attached gear_id=%s rental_id=%s subject=%s", attached["id"], rental["id"], ctx.subject
    )
    return attached


def detach_gear(db: Session, ctx: RelationshipContext) -> dict[str, Any]:
    gear = dict(ctx.gear or {})
    rental = ctx.rental
    if gear.get("rental") != rental["id"]:
        raise ConflictError(GEAR_NOT_RELATED_MESSAGE)

    gear["available"] = True
    gear["rental"] = None
    detached = _save_authoritative(db, GEAR, gear, GEAR_NOT_FOUND_MESSAGE)

    try:
        _rewrite_summary(db, RENTALS, rental["id"], _without_entry("gear", detached["id"]))
    except BackendError as exc:
        _log_partial(exc, "unlist_from_rental", "gear", gear_id=detached["id"], rental_id=rental["id"])
        raise
    RELATIONSHIP_LOGGER.info(
        "Gear detached gear_id=%s rental_id=%s subject=%s", detached["id"], rental["id"], ctx.subject
    )
    return detached


def _without_entry(field: str, entity_id: Any) -> Callable[[dict[str, Any]], bool]:
    def _remove(record: dict[str, Any]) -> bool:
        entries = record.get(field) or []
        kept = [entry for entry in entries if entry.get("id") != entity_id]
        if len(kept) == len(entries):
            return False
        record[field] = kept
        return True

    return _remove


def _release_gear(db: Session, gear_id: Any, rental_id: Any) -> None:
    def _free(gear: dict[str, Any]) -> bool:
        if gear.get("rental") != rental_id:
            return False
        gear["rental"] = None
        gear["available"] = True
        return True

    _rewrite_summary(db, GEAR, gear_id, _free)


def delete_rental(db: Session, ctx: RelationshipContext) -> None:
    rental = ctx.rental
    owner = rental.get("user")
    freed: list[Any] = []
    owner_updated = False
    for _ in range(SUMMARY_WRITE_ATTEMPTS):
        try:
            for entry in rental.get("gear") or []:
                if entry.get("id") in freed:
                    continue
                _release_gear(db, entry.get("id"), rental["id"])
                freed.append(entry.get("id"))
            if not owner_updated:
                _rewrite_summary(db, USERS, owner, _without_entry("rentals", rental["id"]))
                owner_updated = True
            remove_record(db, RENTALS, rental)
        except StaleEntityError:
            # Gear was attached or the rental edited since it was read.
            refreshed = get_rental(db, rental["id"])
            if refreshed is None:
                return
            rental = refreshed
            continue
        except BackendError as exc:
            _log_partial(
                exc,
                "delete_rental",
                f"freed_gear={freed} owner_unlisted={owner_updated}",
                rental_id=rental["id"],
                subject=owner,
            )
            raise
        RELATIONSHIP_LOGGER.info(
            "Rental deleted rental_id=%s freed_gear=%s subject=%s", rental["id"], freed, ctx.subject
        )
        return
    raise VersionConflictError()


def delete_gear(db: Session, gear: dict[str, Any]) -> None:
    current = gear
    for _ in range(SUMMARY_WRITE_ATTEMPTS):
        rental_id = current.get("rental")
        try:
            if rental_id is not None:
                _rewrite_summary(db, RENTALS, rental_id, _without_entry("gear", current["id"]))
            remove_record(db, GEAR, current)
        except StaleEntityError:
            refreshed = get_gear(db, current["id"])
            if refreshed is None:
                return
            current = refreshed
            continue
        except BackendError as exc:
            _log_partial(exc, "delete_gear", "rental_summary", gear_id=current["id"], rental_id=rental_id)
            raise
        RELATIONSHIP_LOGGER.info("Gear deleted gear_id=%s rental_id=%s", current["id"], rental_id)
        return
    raise VersionConflictError()


def find_relationship_drift(db: Session) -> list[str]:
    """List every place where the three kinds disagree with each other."""
    users = {user["id"]: user for user in list_kind(db, USERS)}
    rentals = {rental["id"]: rental for rental in list_kind(db, RENTALS)}
    gear_items = {gear["id"]: gear for gear in list_kind(db, GEAR)}
    problems: list[str] = []

    for gear_id, gear in gear_items.items():
        rental_id = gear.get("rental")
        if bool(gear.get("available")) != (rental_id is None):
            problems.append(f"gear {gear_id}: available={gear.get('available')} but rental={rental_id}")
        if rental_id is None:
            continue
        rental = rentals.get(rental_id)
        if rental is None:
            problems.append(f"gear {gear_id}: points at missing rental {rental_id}")
        elif not any(entry.get("id") == gear_id for entry in rental.get("gear") or []):
            problems.append(f"gear {gear_id}: not listed on rental {rental_id}")

    for rental_id, rental in rentals.items():
        for entry in rental.get("gear") or []:
            gear = gear_items.get(entry.get("id"))
            if gear is None:
                problems.append(f"rental {rental_id}: lists missing gear {entry.get('id')}")
            elif gear.get("rental") != rental_id:
                problems.append(f"rental {rental_id}: lists gear {entry.get('id')} attached to {gear.get('rental')}")
            elif entry.get(DESCRIPTION_FIELD) != gear.get(DESCRIPTION_FIELD):
                problems.append(f"rental {rental_id}: stale description for gear {entry.get('id')}")

    for subject, user in users.items():
        listed = {entry.get("id"): entry for entry in user.get("rentals") or []}
        for rental_id, entry in listed.items():
            rental = rentals.get(rental_id)
            if rental is None:
                problems.append(f"user {subject}: lists missing rental {rental_id}")
            elif entry.get("name") != rental.get("name"):
                problems.append(f"user {subject}: stale name for rental {rental_id}")
        for rental in list_rentals_for_user(db, subject):
            if rental["id"] not in listed:
                problems.append(f"user {subject}: rental {rental['id']} is not listed")

    for rental_id, rental in rentals.items():
        if rental.get("user") not in users:
            problems.append(f"rental {rental_id}: owner {rental.get('user')} does not exist")

    return problems
