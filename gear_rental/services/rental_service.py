from __future__ import annotations

from datetime import date
from typing import Any, Callable

from services.errors import BadRequestError, RENTAL_DATES_MESSAGE


def rental_summary(rental: dict[str, Any]) -> dict[str, Any]:
    return {"id": rental["id"], "name": rental.get("name")}


def _as_date(raw: Any) -> date | None:
    if raw in (None, ""):
        return None
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw))
    except ValueError:
        return None


def validate_rental_dates(rental: dict[str, Any]) -> None:
    start = _as_date(rental.get("start"))
    end = _as_date(rental.get("end"))
    if start and end and end < start:
        raise BadRequestError(RENTAL_DATES_MESSAGE)


def serialize_rental(rental: dict[str, Any], self_link: str) -> dict[str, Any]:
    return {
        "id": rental["id"],
        "start": rental.get("start"),
        "end": rental.get("end"),
        "name": rental.get("name"),
        "user": rental.get("user"),
        "gear": [dict(entry) for entry in rental.get("gear") or []],
        "self": self_link,
    }


def serialize_user(
    user: dict[str, Any],
    self_link: str,
    rental_link: Callable[[Any], str],
) -> dict[str, Any]:
    rentals = []
    for entry in user.get("rentals") or []:
        rentals.append(
            {
                "id": entry.get("id"),
                "name": entry.get("name"),
                "self": rental_link(entry.get("id")),
            }
        )
    return {
        "id": user["id"],
        "First Name": user.get("First Name"),
        "Last Name": user.get("Last Name"),
        "Date Created": user.get("Date Created"),
        "rentals": rentals,
        "self": self_link,
    }
