import os
import uuid
import logging
import threading
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

logging.basicConfig(
    level=(os.environ.get("RENTAL_LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

from db.deps import get_rental_db
from db.session import init_db
from models.rental_models import Tenant, User, utc_now
from schemas.equipment import CategoryCreate, DependencyUpsert, EquipmentUpsert
from schemas.rentals import CreateReservationDto, DecisionRequest, HandoverRequest, to_naive_utc
from schemas.tenants import TenantSettingsUpdate, UserCreate, UserUpdate
from services.approval_workflow import (
    approve_reservation,
    cancel_reservation,
    checkin_reservation,
    checkout_reservation,
    reject_reservation,
    sweep_overdue,
)
from services.audit_trail import list_audit_entries, record_audit, record_failure, serialize_audit_entry
from services.equipment_service import (
    add_dependency,
    checked_out_quantities,
    create_category,
    create_equipment,
    get_equipment,
    list_categories,
    list_dependencies,
    list_equipment,
    remove_dependency,
    serialize_category,
    serialize_dependency,
    serialize_equipment,
    update_equipment,
)
from services.errors import Forbidden, RentalError, Unauthorized
from services.errors import ValidationError as InvalidRequest
from services.notification_service import dispatch_pending, list_pending, serialize_notification
from services.rental_service import get_reservation, list_reservations, load_reservation, serialize_reservation
from services.reservation_engine import check_availability, create_reservation
from services.tenant_context import TenantContext, get_tenant, get_tenant_settings, require_role, require_tenant_access
from services.user_access_service import (
    authenticate,
    context_from_session,
    create_session,
    get_session,
    remove_session,
    serialize_user,
)
from services.user_directory_service import (
    create_user,
    erase_user,
    get_user,
    list_users,
    serialize_tenant,
    update_tenant_settings,
    update_user,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Equipment Rental", lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="equipment_rental_session",
    same_site="lax",
    https_only=False,
)

AUTH_ATTEMPT_WINDOW_SECONDS = int(os.environ.get("AUTH_ATTEMPT_WINDOW_SECONDS") or "300")
AUTH_MAX_ATTEMPTS_PER_IP = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_IP") or "50")
AUTH_MAX_ATTEMPTS_PER_ACCOUNT = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_ACCOUNT") or "8")
AUTH_LOCKOUT_SECONDS = int(os.environ.get("AUTH_LOCKOUT_SECONDS") or "900")
AUTH_LOGGER = logging.getLogger("equipment_rental.auth")
API_LOGGER = logging.getLogger("equipment_rental.api")
_AUTH_GUARD_LOCK = threading.Lock()
_AUTH_ATTEMPTS_BY_IP: dict[str, list[float]] = {}
_AUTH_ATTEMPTS_BY_ACCOUNT: dict[str, list[float]] = {}
_AUTH_LOCKOUT_UNTIL_BY_ACCOUNT: dict[str, float] = {}

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_REQUESTS",
    503: "SERVICE_UNAVAILABLE",
}


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant: str
    email: str
    password: str


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    incoming = (request.headers.get("x-request-id") or "").strip()
    request.state.request_id = incoming[:64] if incoming else uuid.uuid4().hex
    response = await call_next(request)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
            "timestamp": utc_now().isoformat() + "Z",
            "requestId": _request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


@app.exception_handler(RentalError)
async def handle_rental_error(request: Request, exc: RentalError):
    return _error_response(request, exc.status_code, exc.code, exc.message, exc.details)


def _audit_rejected_request(request: Request, principal: TenantContext, errors: list[dict]) -> None:
    # Runs after the request session is released, so it opens its own.
    provider = request.app.dependency_overrides.get(get_rental_db, get_rental_db)
    sessions = provider()
    db = next(sessions)
    try:
        record_failure(
            db,
            principal,
            action="invalid_request",
            entity_type="Request",
            entity_id=None,
            error=InvalidRequest(f"{request.method} {request.url.path} failed validation.", {"errors": errors}),
        )
    finally:
        sessions.close()


@app.exception_handler(RequestValidationError)
def handle_request_validation(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    principal = getattr(request.state, "principal", None)
    if principal is not None and request.method in MUTATING_METHODS:
        _audit_rejected_request(request, principal, errors)
    return _error_response(request, 422, "VALIDATION_ERROR", "Request validation failed.", {"errors": errors})


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException):
    return _error_response(
        request,
        exc.status_code,
        HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    API_LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(request, 500, "INTERNAL_ERROR", "Internal server error.")


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _prune_attempts(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def _store_attempts(store: dict[str, list[float]], key: str, attempts: list[float]) -> None:
    if attempts:
        store[key] = attempts
    else:
        store.pop(key, None)


def _sweep_stale_attempts_unlocked(now_ts: float) -> None:
    for store in (_AUTH_ATTEMPTS_BY_IP, _AUTH_ATTEMPTS_BY_ACCOUNT):
        for key in list(store):
            _store_attempts(store, key, _prune_attempts(store[key], now_ts))
    for key, until in list(_AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.items()):
        if until <= now_ts:
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(key, None)


def _check_login_guard(client_ip: str, account_key: str) -> int | None:
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        lockout_until = _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.get(account_key)
        if lockout_until and lockout_until > now_ts:
            return max(1, int(lockout_until - now_ts))
        if lockout_until and lockout_until <= now_ts:
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)

        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        _store_attempts(_AUTH_ATTEMPTS_BY_IP, client_ip, ip_attempts)
        _store_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT, account_key, account_attempts)

        if len(ip_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_IP, 1):
            oldest = ip_attempts[0]
            return max(1, int((oldest + AUTH_ATTEMPT_WINDOW_SECONDS) - now_ts))
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)
            return max(AUTH_LOCKOUT_SECONDS, 1)
    return None


def _record_login_failure(client_ip: str, account_key: str) -> None:
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        _sweep_stale_attempts_unlocked(now_ts)
        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        ip_attempts.append(now_ts)
        account_attempts.append(now_ts)
        _AUTH_ATTEMPTS_BY_IP[client_ip] = ip_attempts
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)


def _record_login_success(account_key: str) -> None:
    with _AUTH_GUARD_LOCK:
        _AUTH_ATTEMPTS_BY_ACCOUNT.pop(account_key, None)
        _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)


def _audit_auth_event(
    db: Session,
    request: Request,
    *,
    tenant_slug: str,
    action: str,
    details: str,
    user_id: int | None = None,
    email: str | None = None,
    result: str = "success",
) -> None:
    tenant = db.execute(select(Tenant).where(Tenant.Slug == tenant_slug)).scalars().first()
    if tenant is None:
        return
    entity_id = user_id
    if entity_id is None and email:
        # Entries reference the account by id, never by address.
        entity_id = db.execute(
            select(User.UserID)
            .where(User.TenantID == tenant.TenantID)
            .where(func.lower(User.Email) == email.strip().lower())
        ).scalar()
    ctx = TenantContext(tenant_id=tenant.TenantID, user_id=user_id, role="student", request_id=_request_id(request))
    try:
        record_audit(
            db,
            ctx,
            action=action,
            entity_type="Auth",
            entity_id=entity_id,
            details=details,
            result=result,
        )
        db.commit()
    except Exception:
        db.rollback()
        AUTH_LOGGER.exception("Could not audit %s for tenant %s", action, tenant_slug)


def _token_from_headers(authorization: str | None, session_token: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return session_token


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    if session_token:
        return get_session(session_token)
    # Browser clients fall back to the signed cookie set at login.
    return get_session(request.session.get("sessionToken"))


def _require_session_or_401(request: Request, session_token: str | None) -> dict:
    session = _get_active_session(request, session_token)
    if not session:
        raise Unauthorized("Not logged in.")
    return session


def get_principal(
    request: Request,
    db: Session = Depends(get_rental_db),
    authorization: str | None = Header(None),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
) -> TenantContext:
    session = _require_session_or_401(request, _token_from_headers(authorization, x_session_token))
    return context_from_session(db, session, _request_id(request))


def get_tenant_principal(
    tenant_id: int,
    request: Request,
    ctx: TenantContext = Depends(get_principal),
    db: Session = Depends(get_rental_db),
) -> TenantContext:
    try:
        require_tenant_access(ctx, tenant_id)
    except Forbidden as exc:
        if request.method in MUTATING_METHODS:
            # Recorded in the caller's own tenant.
            record_failure(db, ctx, action="tenant_access", entity_type="Tenant", entity_id=tenant_id, error=exc)
        raise
    request.state.principal = ctx
    return ctx


def _reservation_payload(db: Session, ctx: TenantContext, reservation_id: int) -> dict:
    return serialize_reservation(load_reservation(db, ctx.tenant_id, reservation_id))


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_rental_db)):
    client_ip = _get_client_ip(request)
    try:
        parsed = AuthLoginRequest.model_validate(payload)
    except ValidationError:
        AUTH_LOGGER.warning("Login rejected ip=%s reason=invalid_payload", client_ip)
        raise HTTPException(status_code=400, detail="Invalid login request.")

    tenant_slug = parsed.tenant.strip().lower()
    account_key = f"{tenant_slug}:{parsed.email.strip().lower()}"
    retry_after = _check_login_guard(client_ip, account_key)
    if retry_after is not None:
        _audit_auth_event(
            db,
            request,
            tenant_slug=tenant_slug,
            action="login_throttled",
            details=f"ip={client_ip} retry_after={retry_after}",
            email=parsed.email,
            result="failure",
        )
        AUTH_LOGGER.warning("Login throttled ip=%s key=%s retry_after=%s", client_ip, account_key, retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    try:
        user = authenticate(db, tenant_slug, parsed.email, parsed.password)
    except Unauthorized:
        _record_login_failure(client_ip, account_key)
        _audit_auth_event(
            db,
            request,
            tenant_slug=tenant_slug,
            action="login_failed",
            details=f"ip={client_ip}",
            email=parsed.email,
            result="failure",
        )
        AUTH_LOGGER.warning("Login failed ip=%s key=%s", client_ip, account_key)
        raise

    token = create_session(user)
    request.session["sessionToken"] = token
    _record_login_success(account_key)
    _audit_auth_event(
        db,
        request,
        tenant_slug=tenant_slug,
        action="login",
        details=f"ip={client_ip}",
        user_id=user.UserID,
    )
    AUTH_LOGGER.info("Login success ip=%s key=%s user_id=%s", client_ip, account_key, user.UserID)
    return {"sessionToken": token, "user": serialize_user(user)}


@app.post("/api/auth/logout")
def auth_logout(
    request: Request,
    authorization: str | None = Header(None),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    token = _token_from_headers(authorization, x_session_token) or request.session.get("sessionToken")
    request.session.clear()
    remove_session(token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(ctx: TenantContext = Depends(get_principal), db: Session = Depends(get_rental_db)):
    user = get_user(db, ctx.tenant_id, ctx.user_id)
    return {"user": serialize_user(user), "tenantID": ctx.tenant_id, "role": ctx.role}


@app.get("/api/tenants/{tenant_id}/settings")
def get_settings(tenant_id: int, ctx: TenantContext = Depends(get_tenant_principal), db: Session = Depends(get_rental_db)):
    return serialize_tenant(get_tenant(db, tenant_id), get_tenant_settings(db, tenant_id))


@app.put("/api/tenants/{tenant_id}/settings")
def put_settings(
    tenant_id: int,
    payload: TenantSettingsUpdate,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    settings = update_tenant_settings(db, ctx, payload)
    return serialize_tenant(get_tenant(db, tenant_id), settings)


@app.get("/api/tenants/{tenant_id}/users")
def get_users(
    tenant_id: int,
    include_inactive: bool = Query(True, alias="includeInactive"),
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return [serialize_user(user) for user in list_users(db, ctx, include_inactive=include_inactive)]


@app.post("/api/tenants/{tenant_id}/users", status_code=201)
def post_user(
    tenant_id: int,
    payload: UserCreate,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return serialize_user(create_user(db, ctx, payload))


@app.put("/api/tenants/{tenant_id}/users/{user_id}")
def put_user(
    tenant_id: int,
    user_id: int,
    payload: UserUpdate,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return serialize_user(update_user(db, ctx, user_id, payload))


@app.post("/api/tenants/{tenant_id}/users/{user_id}/erase")
def post_user_erase(
    tenant_id: int,
    user_id: int,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return erase_user(db, ctx, user_id)


@app.get("/api/tenants/{tenant_id}/categories")
def get_categories(tenant_id: int, ctx: TenantContext = Depends(get_tenant_principal), db: Session = Depends(get_rental_db)):
    return [serialize_category(category) for category in list_categories(db, tenant_id)]


@app.post("/api/tenants/{tenant_id}/categories", status_code=201)
def post_category(
    tenant_id: int,
    payload: CategoryCreate,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return serialize_category(create_category(db, ctx, payload))


@app.get("/api/tenants/{tenant_id}/equipment")
def get_equipment_list(
    tenant_id: int,
    search: Optional[str] = Query(None),
    category_id: Optional[int] = Query(None, alias="categoryID"),
    status: Optional[str] = Query(None),
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    rows = list_equipment(db, tenant_id, search=search, category_id=category_id, status=status)
    usage = checked_out_quantities(db, tenant_id, [equipment.EquipmentID for equipment in rows])
    return [serialize_equipment(equipment, usage.get(equipment.EquipmentID, 0)) for equipment in rows]


@app.post("/api/tenants/{tenant_id}/equipment", status_code=201)
def post_equipment(
    tenant_id: int,
    payload: EquipmentUpsert,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return serialize_equipment(create_equipment(db, ctx, payload))


@app.get("/api/tenants/{tenant_id}/equipment/{equipment_id}")
def get_equipment_item(
    tenant_id: int,
    equipment_id: int,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    equipment = get_equipment(db, tenant_id, equipment_id)
    usage = checked_out_quantities(db, tenant_id, [equipment_id])
    payload = serialize_equipment(equipment, usage.get(equipment_id, 0))
    payload["dependencies"] = [serialize_dependency(dep) for dep in list_dependencies(db, tenant_id, equipment_id)]
    return payload


@app.put("/api/tenants/{tenant_id}/equipment/{equipment_id}")
def put_equipment(
    tenant_id: int,
    equipment_id: int,
    payload: EquipmentUpsert,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return serialize_equipment(update_equipment(db, ctx, equipment_id, payload))


@app.get("/api/tenants/{tenant_id}/equipment/{equipment_id}/dependencies")
def get_dependencies(
    tenant_id: int,
    equipment_id: int,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return [serialize_dependency(dep) for dep in list_dependencies(db, tenant_id, equipment_id)]


@app.post("/api/tenants/{tenant_id}/equipment/{equipment_id}/dependencies", status_code=201)
def post_dependency(
    tenant_id: int,
    equipment_id: int,
    payload: DependencyUpsert,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return serialize_dependency(add_dependency(db, ctx, equipment_id, payload))


@app.delete("/api/tenants/{tenant_id}/equipment/{equipment_id}/dependencies/{child_id}")
def delete_dependency(
    tenant_id: int,
    equipment_id: int,
    child_id: int,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    remove_dependency(db, ctx, equipment_id, child_id)
    return {"ok": True}


@app.get("/api/tenants/{tenant_id}/equipment/{equipment_id}/availability")
def get_availability(
    tenant_id: int,
    equipment_id: int,
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    quantity: int = Query(1),
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return check_availability(
        db,
        ctx,
        equipment_id,
        to_naive_utc(start_date),
        to_naive_utc(end_date),
        quantity,
    )


@app.get("/api/tenants/{tenant_id}/reservations")
def get_reservations(
    tenant_id: int,
    status: Optional[str] = Query(None),
    mine: bool = Query(False),
    equipment_id: Optional[int] = Query(None, alias="equipmentID"),
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    now = utc_now()
    rows = list_reservations(db, ctx, status=status, mine=mine, equipment_id=equipment_id, now=now)
    return [serialize_reservation(reservation, now) for reservation in rows]


@app.post("/api/tenants/{tenant_id}/reservations", status_code=201)
def post_reservation(
    tenant_id: int,
    payload: CreateReservationDto,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    reservation = create_reservation(db, ctx, payload)
    return _reservation_payload(db, ctx, reservation.ReservationID)


@app.get("/api/tenants/{tenant_id}/reservations/{reservation_id}")
def get_reservation_item(
    tenant_id: int,
    reservation_id: int,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    return serialize_reservation(get_reservation(db, ctx, reservation_id))


@app.post("/api/tenants/{tenant_id}/reservations/{reservation_id}/approve")
def post_approve(
    tenant_id: int,
    reservation_id: int,
    payload: Optional[DecisionRequest] = None,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    approve_reservation(db, ctx, reservation_id, payload)
    return _reservation_payload(db, ctx, reservation_id)


@app.post("/api/tenants/{tenant_id}/reservations/{reservation_id}/reject")
def post_reject(
    tenant_id: int,
    reservation_id: int,
    payload: DecisionRequest,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    reject_reservation(db, ctx, reservation_id, payload)
    return _reservation_payload(db, ctx, reservation_id)


@app.post("/api/tenants/{tenant_id}/reservations/{reservation_id}/cancel")
def post_cancel(
    tenant_id: int,
    reservation_id: int,
    payload: Optional[DecisionRequest] = None,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    cancel_reservation(db, ctx, reservation_id, payload)
    return _reservation_payload(db, ctx, reservation_id)


@app.post("/api/tenants/{tenant_id}/reservations/{reservation_id}/checkout")
def post_checkout(
    tenant_id: int,
    reservation_id: int,
    payload: Optional[HandoverRequest] = None,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    checkout_reservation(db, ctx, reservation_id, payload)
    return _reservation_payload(db, ctx, reservation_id)


@app.post("/api/tenants/{tenant_id}/reservations/{reservation_id}/checkin")
def post_checkin(
    tenant_id: int,
    reservation_id: int,
    payload: Optional[HandoverRequest] = None,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    _, damage = checkin_reservation(db, ctx, reservation_id, payload)
    response = _reservation_payload(db, ctx, reservation_id)
    response["damageReport"] = damage
    return response


@app.get("/api/tenants/{tenant_id}/audit")
def get_audit(
    tenant_id: int,
    entity_type: Optional[str] = Query(None, alias="entityType"),
    entity_id: Optional[int] = Query(None, alias="entityID"),
    actor: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    result: Optional[str] = Query(None),
    after_sequence: Optional[int] = Query(None, alias="afterSequence"),
    limit: int = Query(100),
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    entries = list_audit_entries(
        db,
        ctx,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_ref=actor,
        action=action,
        result=result,
        after_sequence=after_sequence,
        limit=limit,
    )
    return [serialize_audit_entry(entry) for entry in entries]


@app.post("/api/tenants/{tenant_id}/notifications/run")
def run_notifications(
    tenant_id: int,
    limit: int = Query(100),
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    require_role(ctx, "manager")
    flagged = sweep_overdue(db, TenantContext.system(tenant_id, ctx.request_id))
    stats = dispatch_pending(db, tenant_id, limit=max(1, min(int(limit), 500)))
    API_LOGGER.info("Notification run tenant=%s overdue=%s stats=%s", tenant_id, len(flagged), stats)
    return {"overdueFlagged": [reservation.ReservationID for reservation in flagged], **stats}


@app.get("/api/tenants/{tenant_id}/notifications/pending")
def get_pending_notifications(
    tenant_id: int,
    ctx: TenantContext = Depends(get_tenant_principal),
    db: Session = Depends(get_rental_db),
):
    require_role(ctx, "manager")
    return [serialize_notification(n) for n in list_pending(db, tenant_id)]
