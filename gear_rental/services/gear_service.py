from __future__ import annotations

from typing import Any


DESCRIPTION_FIELD = "item description"


def gear_summary(gear: dict[str, Any]) -> dict[str, Any]:
    return {"id": gear["id"], DESCRIPTION_FIELD: gear.get(DESCRIPTION_FIELD)}


def serialize_gear(gear: dict[str, Any], self_link: str) -> dict[str, Any]:
    return {
        "id": gear["id"],
        DESCRIPTION_FIELD: gear.get(DESCRIPTION_FIELD),
        "category": gear.get("category"),
        "available": bool(gear.get("available")),
        "rental": gear.get("rental"),
        "self": self_link,
    }
