import logging
import os
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote, unquote, urlencode

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from db.deps import get_datastore_db
from db.session import init_datastore
from services.errors import (
    GEAR_NOT_FOUND_MESSAGE,
    INVALID_VALUES_MESSAGE,
    RENTAL_NOT_FOUND_MESSAGE,
    ForbiddenError,
    GearRentalError,
    MethodNotSupportedError,
    NotFoundError,
)
from services.gear_service import serialize_gear
from services.google_identity_service import GoogleIdentityVerifier, IdentityClaims, get_identity_verifier
from services.relationship_service import (
    RelationshipContext,
    attach_gear,
    create_rental,
    delete_gear,
    delete_rental,
    detach_gear,
    ensure_user,
    update_gear,
    update_rental,
)
from services.rental_service import serialize_rental, serialize_user
from services.repository import (
    GEAR,
    RENTALS,
    USERS,
    consume_auth_state,
    create_auth_state,
    create_gear,
    get_gear,
    get_rental,
    page_kind,
)
from services.request_guards import (
    GEAR_CREATE,
    GEAR_PATCH,
    GEAR_REPLACE,
    RENTAL_CREATE,
    RENTAL_PATCH,
    RENTAL_REPLACE,
    USER_CREATE,
    JsonRoute,
    require_identity,
)


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


PAGE_SIZE = int(os.environ.get("PAGE_SIZE") or "3")
AUTH_STATE_TTL_SECONDS = int(os.environ.get("AUTH_STATE_TTL_SECONDS") or "300")
LOGIN_SUCCESS_URL = os.environ.get("LOGIN_SUCCESS_URL") or "/login_success.html"
LOGIN_FAILURE_URL = os.environ.get("LOGIN_FAILURE_URL") or "/login_failure.html"
DATASTORE_AUTO_CREATE = _parse_bool_env("DATASTORE_AUTO_CREATE", "true")
AUTH_LOGGER = logging.getLogger("gear_rental.auth")

COLLECTION_ALLOW = ("GET", "POST")
RELATIONSHIP_ALLOW = ("PUT", "DELETE")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if DATASTORE_AUTO_CREATE:
        init_datastore()
    yield


app = FastAPI(lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:8080,http://localhost:8080",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GearRentalError)
async def handle_gear_rental_error(_request: Request, exc: GearRentalError):
    return JSONResponse(status_code=exc.status_code, content={"Error": exc.message}, headers=exc.headers or None)


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(_request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"Error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(_request: Request, _exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"Error": INVALID_VALUES_MESSAGE})


def _self_link(request: Request, kind: str, entity_id: Any) -> str:
    return f"{str(request.base_url).rstrip('/')}/{kind}/{entity_id}"


def _next_link(request: Request, kind: str, cursor: str | None) -> str | None:
    if not cursor:
        return None
    return f"{str(request.base_url).rstrip('/')}/{kind}?token={quote(cursor, safe='')}"


def _page_response(
    request: Request,
    db: Session,
    kind: str,
    token: str | None,
    render,
    field: str | None = None,
    value: Any = None,
) -> dict[str, Any]:
    cursor = unquote(token) if token else None
    page = page_kind(db, kind, PAGE_SIZE, cursor=cursor, field=field, value=value)
    return {
        kind: [render(item) for item in page[kind]],
        "next": _next_link(request, kind, page["next"]),
        "total": page["total"],
    }


def _render_user(request: Request, user: dict[str, Any]) -> dict[str, Any]:
    return serialize_user(
        user,
        _self_link(request, USERS, user["id"]),
        lambda rental_id: _self_link(request, RENTALS, rental_id),
    )


def _see_other(link: str) -> Response:
    return Response(status_code=303, headers={"Location": link})


def _load_gear(db: Session, gear_id: str) -> dict[str, Any]:
    gear = get_gear(db, gear_id)
    if not gear:
        raise NotFoundError(GEAR_NOT_FOUND_MESSAGE)
    return gear


def _load_owned_rental(db: Session, rental_id: str, claims: IdentityClaims) -> dict[str, Any]:
    rental = get_rental(db, rental_id)
    if not rental:
        raise NotFoundError(RENTAL_NOT_FOUND_MESSAGE)
    if rental.get("user") != claims.subject:
        AUTH_LOGGER.info("Ownership check failed rental_id=%s subject=%s", rental["id"], claims.subject)
        raise ForbiddenError()
    return rental


def _login_failure(reason: str) -> RedirectResponse:
    AUTH_LOGGER.warning("Login failed reason=%s", reason)
    return RedirectResponse(LOGIN_FAILURE_URL, status_code=302)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/healthz/datastore")
def healthcheck_datastore(db: Session = Depends(get_datastore_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail="The datastore is unavailable.") from exc


# ---------------------------------------------------------------- login


@app.get("/login")
def login(
    db: Session = Depends(get_datastore_db),
    verifier: GoogleIdentityVerifier = Depends(get_identity_verifier),
):
    try:
        state = create_auth_state(db)
        return RedirectResponse(verifier.authorization_url(state), status_code=302)
    except (GearRentalError, RuntimeError) as exc:
        return _login_failure(f"start {exc}")


@app.get("/oauth")
def oauth_callback(
    state: str | None = Query(None),
    code: str | None = Query(None),
    db: Session = Depends(get_datastore_db),
    verifier: GoogleIdentityVerifier = Depends(get_identity_verifier),
):
    try:
        if not consume_auth_state(db, state or "", AUTH_STATE_TTL_SECONDS):
            return _login_failure("state")
        if not code:
            return _login_failure("missing_code")
        tokens = verifier.exchange_code(code)
        id_token = str(tokens.get("id_token") or "")
        if not id_token:
            return _login_failure("missing_id_token")
        claims = verifier.verify(id_token)
        ensure_user(db, claims)
    except (GearRentalError, RuntimeError) as exc:
        return _login_failure(type(exc).__name__)

    AUTH_LOGGER.info("Login succeeded subject=%s", claims.subject)
    query = urlencode(
        {
            "first": claims.given_name,
            "last": claims.family_name,
            "id": claims.subject,
            "token": id_token,
        }
    )
    return RedirectResponse(f"{LOGIN_SUCCESS_URL}?{query}", status_code=302)


# ---------------------------------------------------------------- users


@app.get("/users")
def list_users(
    request: Request,
    token: str | None = Query(None),
    _headers: None = Depends(JsonRoute(content_type=False)),
    db: Session = Depends(get_datastore_db),
):
    return _page_response(request, db, USERS, token, lambda user: _render_user(request, user))


@app.post("/users", status_code=201)
def create_user_from_token(
    request: Request,
    _headers: None = Depends(JsonRoute()),
    claims: IdentityClaims = Depends(require_identity),
    _fields: dict = Depends(JsonRoute(USER_CREATE, content_type=False, accept=False)),
    db: Session = Depends(get_datastore_db),
):
    user, _created = ensure_user(db, claims)
    return _render_user(request, user)


@app.api_route("/users", methods=["PUT", "PATCH", "DELETE"])
def users_method_not_allowed():
    raise MethodNotSupportedError(COLLECTION_ALLOW)


# ---------------------------------------------------------------- gear


@app.get("/gear")
def list_gear_items(
    request: Request,
    token: str | None = Query(None),
    _headers: None = Depends(JsonRoute(content_type=False)),
    db: Session = Depends(get_datastore_db),
):
    return _page_response(
        request,
        db,
        GEAR,
        token,
        lambda gear: serialize_gear(gear, _self_link(request, GEAR, gear["id"])),
    )


@app.post("/gear", status_code=201)
def create_gear_item(
    request: Request,
    fields: dict = Depends(JsonRoute(GEAR_CREATE)),
    db: Session = Depends(get_datastore_db),
):
    gear = create_gear(db, fields)
    return serialize_gear(gear, _self_link(request, GEAR, gear["id"]))


@app.api_route("/gear", methods=["PUT", "PATCH", "DELETE"])
def gear_method_not_allowed():
    raise MethodNotSupportedError(COLLECTION_ALLOW)


@app.get("/gear/{gear_id}")
def get_gear_item(
    gear_id: str,
    request: Request,
    _headers: None = Depends(JsonRoute(content_type=False)),
    db: Session = Depends(get_datastore_db),
):
    gear = _load_gear(db, gear_id)
    return serialize_gear(gear, _self_link(request, GEAR, gear["id"]))


@app.put("/gear/{gear_id}")
def replace_gear_item(
    gear_id: str,
    request: Request,
    fields: dict = Depends(JsonRoute(GEAR_REPLACE)),
    db: Session = Depends(get_datastore_db),
):
    updated = update_gear(db, _load_gear(db, gear_id), fields)
    return _see_other(_self_link(request, GEAR, updated["id"]))


@app.patch("/gear/{gear_id}")
def patch_gear_item(
    gear_id: str,
    request: Request,
    fields: dict = Depends(JsonRoute(GEAR_PATCH)),
    db: Session = Depends(get_datastore_db),
):
    updated = update_gear(db, _load_gear(db, gear_id), fields)
    return _see_other(_self_link(request, GEAR, updated["id"]))


@app.delete("/gear/{gear_id}", status_code=204)
def delete_gear_item(gear_id: str, db: Session = Depends(get_datastore_db)):
    delete_gear(db, _load_gear(db, gear_id))
    return Response(status_code=204)


# ---------------------------------------------------------------- rentals


@app.get("/rentals")
def list_user_rentals(
    request: Request,
    token: str | None = Query(None),
    _headers: None = Depends(JsonRoute(content_type=False)),
    claims: IdentityClaims = Depends(require_identity),
    db: Session = Depends(get_datastore_db),
):
    return _page_response(
        request,
        db,
        RENTALS,
        token,
        lambda rental: serialize_rental(rental, _self_link(request, RENTALS, rental["id"])),
        field="user",
        value=claims.subject,
    )


@app.post("/rentals", status_code=201)
def create_user_rental(
    request: Request,
    fields: dict = Depends(JsonRoute(RENTAL_CREATE)),
    claims: IdentityClaims = Depends(require_identity),
    db: Session = Depends(get_datastore_db),
):
    rental = create_rental(db, claims, fields)
    return serialize_rental(rental, _self_link(request, RENTALS, rental["id"]))


@app.api_route("/rentals", methods=["PUT", "PATCH", "DELETE"])
def rentals_method_not_allowed():
    raise MethodNotSupportedError(COLLECTION_ALLOW)


@app.get("/rentals/{rental_id}")
def get_user_rental(
    rental_id: str,
    request: Request,
    _headers: None = Depends(JsonRoute(content_type=False)),
    claims: IdentityClaims = Depends(require_identity),
    db: Session = Depends(get_datastore_db),
):
    rental = _load_owned_rental(db, rental_id, claims)
    return serialize_rental(rental, _self_link(request, RENTALS, rental["id"]))


@app.put("/rentals/{rental_id}")
def replace_user_rental(
    rental_id: str,
    request: Request,
    fields: dict = Depends(JsonRoute(RENTAL_REPLACE)),
    claims: IdentityClaims = Depends(require_identity),
    db: Session = Depends(get_datastore_db),
):
    ctx = RelationshipContext(subject=claims.subject, rental=_load_owned_rental(db, rental_id, claims))
    updated = update_rental(db, ctx, fields)
    return _see_other(_self_link(request, RENTALS, updated["id"]))


@app.patch("/rentals/{rental_id}")
def patch_user_rental(
    rental_id: str,
    request: Request,
    fields: dict = Depends(JsonRoute(RENTAL_PATCH)),
    claims: IdentityClaims = Depends(require_identity),
    db: Session = Depends(get_datastore_db),
):
    ctx = RelationshipContext(subject=claims.subject, rental=_load_owned_rental(db, rental_id, claims))
    updated = update_rental(db, ctx, fields)
    return _see_other(_self_link(request, RENTALS, updated["id"]))


@app.delete("/rentals/{rental_id}", status_code=204)
def delete_user_rental(
    rental_id: str,
    claims: IdentityClaims = Depends(require_identity),
    db: Session = Depends(get_datastore_db),
):
    ctx = RelationshipContext(subject=claims.subject, rental=_load_owned_rental(db, rental_id, claims))
    delete_rental(db, ctx)
    return Response(status_code=204)


# ---------------------------------------------------------------- rental gear


def _relationship_context(db: Session, rental_id: str, gear_id: str, claims: IdentityClaims) -> RelationshipContext:
    # Gear existence is checked before the rental, then ownership.
    gear = _load_gear(db, gear_id)
    rental = _load_owned_rental(db, rental_id, claims)
    return RelationshipContext(subject=claims.subject, rental=rental, gear=gear)


@app.put("/rentals/{rental_id}/gear/{gear_id}", status_code=204)
def attach_rental_gear(
    rental_id: str,
    gear_id: str,
    claims: IdentityClaims = Depends(require_identity),
    db: Session = Depends(get_datastore_db),
):
    attach_gear(db, _relationship_context(db, rental_id, gear_id, claims))
    return Response(status_code=204)


@app.delete("/rentals/{rental_id}/gear/{gear_id}", status_code=204)
def detach_rental_gear(
    rental_id: str,
    gear_id: str,
    claims: IdentityClaims = Depends(require_identity),
    db: Session = Depends(get_datastore_db),
):
    detach_gear(db, _relationship_context(db, rental_id, gear_id, claims))
    return Response(status_code=204)


@app.api_route("/rentals/{rental_id}/gear/{gear_id}", methods=["GET", "POST", "PATCH"])
def rental_gear_method_not_allowed(rental_id: str, gear_id: str):
    raise MethodNotSupportedError(RELATIONSHIP_ALLOW)
