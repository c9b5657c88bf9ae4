from __future__ import annotations
from typing import Optional

import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from .admission import AdmissionController, check_day
from .allocator import seat_plan
from .auth import (
    Actor, authenticate, create_access_token, require_admin, require_scanner,
)
from .config import (
    BASE_PRICE, CORS_ORIGINS, DATABASE_URL, EVENT_CODE, EVENT_DAYS, EVENT_NAME,
    OTP_BACKEND, REDIS_URL, ACCESS_TOKEN_EXPIRE_MINUTES,
)
from .errors import FestgateError, NotFound, ValidationFailed
from .gateway import MockPay, PaymentGateway, make_gateway
from .infra.logs import configure_logging
from .infra.sql import make_database
from .infra.timings import aggregates, install_shutdown_log, timeit
from .model import otp
from .model.orm import FAILED, PENDING
from .model.store import RegistrationStore, entry_view, registration_view
from .notifier import Notifier, make_notifier
from .referral import FriendReferralGate
from .schemas import (
    BulkNotificationIn, ConfirmEntryIn, EligibilityIn, FriendRegistrationIn,
    GatewayVerifyIn, GroupMembersUpdate, LoginIn, ManualPaymentIn,
    MockEmitIn, OtpIn, PaymentStatusIn, RegistrationCreate, ReviewIn, ScanIn,
    SettingIn,
)
from .workflow import PaymentWorkflow

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(
    title="festgate",
    default_response_class=ORJSONResponse,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# shutdown handler logging our detailed timings
install_shutdown_log(app)


# ----------------------------
# Errors
# ----------------------------
@app.exception_handler(FestgateError)
async def _festgate_error(request: Request, exc: FestgateError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path,
                     error=exc.code, message=exc.message)
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    err = ValidationFailed("invalid request",
                           {"errors": jsonable_encoder(exc.errors())})
    return ORJSONResponse(status_code=err.status_code, content=err.to_dict())


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("festgate_starting", event_name=EVENT_NAME,
                event_code=EVENT_CODE, days=EVENT_DAYS,
                otp_backend=OTP_BACKEND)


@app.on_event("startup")
async def _db_init():
    app.state.db = make_database(DATABASE_URL)
    app.state.store = RegistrationStore(app.state.db)
    await app.state.store.create_schema()


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if OTP_BACKEND != "pg":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _collaborators_start():
    app.state.gateway = make_gateway()
    app.state.notifier = make_notifier()


@app.on_event("shutdown")
async def _gateway_stop():
    gw = getattr(app.state, "gateway", None)
    if gw is not None:
        await gw.aclose()
        app.state.gateway = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    db = getattr(app.state, "db", None)
    if db is not None:
        await db.dispose()
        app.state.db = None


# ----------------------------
# Dependencies
# ----------------------------
def get_store() -> RegistrationStore:
    return app.state.store


def get_otps():
    return otp.new_store(db=app.state.db, r=app.state.redis)


def get_gateway() -> PaymentGateway:
    return app.state.gateway


def get_notifier() -> Notifier:
    return app.state.notifier


def get_workflow(
    store: RegistrationStore = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentWorkflow:
    return PaymentWorkflow(store, gateway, notifier)


def get_referrals(
    store: RegistrationStore = Depends(get_store),
    otps=Depends(get_otps),
    notifier: Notifier = Depends(get_notifier),
) -> FriendReferralGate:
    return FriendReferralGate(store, otps, notifier)


def get_admission(
    store: RegistrationStore = Depends(get_store),
) -> AdmissionController:
    return AdmissionController(store)


def _with_plan(view: dict) -> dict:
    plan = seat_plan(view["ticketQuantity"])
    view["seatPlan"] = {"paid": plan.paid, "free": plan.free,
                        "total": plan.total,
                        "membersRequired": plan.members_required}
    return view


def ok(data=None, message: Optional[str] = None, **extra) -> dict:
    out = {"success": True}
    if message:
        out["message"] = message
    if data is not None:
        out["data"] = data
    out.update(extra)
    return out


# ----------------------------
# Registrations
# ----------------------------
@app.post("/api/registrations", status_code=201)
async def create_registration(
    payload: RegistrationCreate,
    wf: PaymentWorkflow = Depends(get_workflow),
):
    reg = await wf.create_registration(payload.model_dump(by_alias=True))
    return ok(_with_plan(registration_view(reg)),
              "registration created")


@app.get("/api/registrations/{reg_id}")
async def get_registration(
    reg_id: str, store: RegistrationStore = Depends(get_store),
):
    reg = await store.get(reg_id)
    return ok(_with_plan(registration_view(reg)))


@app.put("/api/registrations/{reg_id}/group-members")
async def update_group_members(
    reg_id: str, payload: GroupMembersUpdate,
    wf: PaymentWorkflow = Depends(get_workflow),
):
    members = [m.model_dump(by_alias=True) for m in payload.group_members]
    reg = await wf.update_group_members(reg_id, members)
    return ok(_with_plan(registration_view(reg)), "group members saved")


@app.post("/api/registrations/{reg_id}/submit-payment")
async def submit_payment(
    reg_id: str, payload: ManualPaymentIn,
    wf: PaymentWorkflow = Depends(get_workflow),
):
    reg = await wf.submit_manual_payment(reg_id, payload.upi_transaction_id,
                                         payload.payment_screenshot)
    return ok(registration_view(reg),
              "payment submitted; awaiting verification")


@app.post("/api/registrations/{reg_id}/order")
async def create_order(
    reg_id: str, wf: PaymentWorkflow = Depends(get_workflow),
):
    return ok(await wf.create_gateway_order(reg_id))


@app.post("/api/registrations/verify-payment")
async def verify_payment(
    payload: GatewayVerifyIn, wf: PaymentWorkflow = Depends(get_workflow),
):
    reg = await wf.confirm_gateway_payment(payload.razorpay_order_id,
                                           payload.razorpay_payment_id,
                                           payload.razorpay_signature)
    return ok(registration_view(reg), "payment verified")


# ----------------------------
# Payments
# ----------------------------
@app.get("/api/payments/orders/{order_id}/status")
async def order_status(
    order_id: str, wf: PaymentWorkflow = Depends(get_workflow),
):
    reg = await wf.check_payment_status(order_id)
    return ok(registration_view(reg))


@app.post("/api/payments/webhook")
async def payments_webhook(
    request: Request, wf: PaymentWorkflow = Depends(get_workflow),
):
    payload = await request.body()
    headers = dict(request.headers)
    return await wf.handle_webhook(payload, headers)


# MockPay stands in for the hosted checkout during development
@app.post("/api/mockpay/{order_id}/emit")
async def mockpay_emit(
    order_id: str, payload: MockEmitIn,
    gateway: PaymentGateway = Depends(get_gateway),
    wf: PaymentWorkflow = Depends(get_workflow),
):
    if not isinstance(gateway, MockPay):
        raise NotFound("mock gateway not enabled")
    if payload.t not in ("captured", "failed"):
        raise ValidationFailed("t must be 'captured' or 'failed'",
                               {"fields": {"t": "invalid"}})
    sim = gateway.emit(order_id, payload.t)
    result = await wf.handle_webhook(sim["payload"], sim["headers"])
    return {"ok": True, "checkout": sim["checkout"], **result}


# ----------------------------
# Admin review of payments
# ----------------------------
@app.patch("/api/registrations/{reg_id}/verify")
async def review_payment(
    reg_id: str, payload: ReviewIn,
    actor: Actor = Depends(require_admin),
    wf: PaymentWorkflow = Depends(get_workflow),
):
    if payload.action == "approve":
        reg = await wf.approve(reg_id, actor, payload.admin_notes)
        return ok(registration_view(reg, include_proof=True),
                  "payment approved")
    if payload.action == "reject":
        reg = await wf.reject(reg_id, actor, payload.reason,
                              payload.admin_notes)
        return ok(registration_view(reg, include_proof=True),
                  "payment rejected")
    raise ValidationFailed("action must be 'approve' or 'reject'",
                           {"fields": {"action": "invalid"}})


@app.patch("/api/registrations/{reg_id}/payment-status")
async def set_payment_status(
    reg_id: str, payload: PaymentStatusIn,
    actor: Actor = Depends(require_admin),
    wf: PaymentWorkflow = Depends(get_workflow),
):
    reg = await wf.set_payment_status(reg_id, actor, payload.payment_status)
    return ok(registration_view(reg, include_proof=True))


@app.post("/api/registrations/{reg_id}/resend-ticket")
async def resend_ticket(
    reg_id: str,
    actor: Actor = Depends(require_admin),
    wf: PaymentWorkflow = Depends(get_workflow),
):
    reg = await wf.resend_ticket(reg_id, actor)
    return ok(registration_view(reg, include_proof=True), "ticket sent")


# ----------------------------
# Gate
# ----------------------------
@app.post("/api/tickets/verify-multi-day")
async def verify_ticket(
    payload: ScanIn,
    actor: Actor = Depends(require_scanner),
    gate: AdmissionController = Depends(get_admission),
):
    async with timeit("gate.verify"):
        result = await gate.verify(payload.qr_data, payload.event_day, actor)
    return result.to_dict()


@app.post("/api/tickets/confirm-entry-multi-day")
async def confirm_entry(
    payload: ConfirmEntryIn,
    actor: Actor = Depends(require_scanner),
    gate: AdmissionController = Depends(get_admission),
):
    async with timeit("gate.confirm"):
        result = await gate.confirm(payload.ticket_number, payload.event_day,
                                    actor, payload.group_member_id)
    return result.to_dict()


@app.get("/api/tickets/multi-day-stats")
async def multi_day_stats(
    actor: Actor = Depends(require_scanner),
    gate: AdmissionController = Depends(get_admission),
):
    return ok(await gate.day_stats(actor))


# ----------------------------
# Friend referral
# ----------------------------
@app.get("/api/friend/status")
async def friend_status(refs: FriendReferralGate = Depends(get_referrals)):
    return ok(await refs.offer_status())


@app.post("/api/friend/check-eligibility")
async def friend_check_eligibility(
    payload: EligibilityIn,
    refs: FriendReferralGate = Depends(get_referrals),
):
    return ok(await refs.check_eligibility(payload.identifier),
              "verification code sent")


@app.post("/api/friend/verify-otp")
async def friend_verify_otp(
    payload: OtpIn, refs: FriendReferralGate = Depends(get_referrals),
):
    return ok(await refs.verify_otp(payload.email, payload.otp),
              "email verified")


@app.post("/api/friend/register", status_code=201)
async def friend_register(
    payload: FriendRegistrationIn,
    refs: FriendReferralGate = Depends(get_referrals),
):
    reg = await refs.register_friend(payload.referrer_email,
                                     payload.model_dump(by_alias=True))
    return ok(_with_plan(registration_view(reg)), "friend registered")


# ----------------------------
# Admin
# ----------------------------
@app.post("/api/admin/login")
async def admin_login(payload: LoginIn):
    actor = authenticate(payload.username, payload.password)
    logger.info("login", username=actor.username, role=actor.role)
    return ok({
        "accessToken": create_access_token(actor),
        "tokenType": "bearer",
        "role": actor.role,
        "expiresIn": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    })


@app.get("/api/admin/dashboard/stats")
async def dashboard_stats(
    actor: Actor = Depends(require_admin),
    store: RegistrationStore = Depends(get_store),
):
    stats = await store.dashboard_stats()
    stats["entries"] = await store.day_stats(EVENT_DAYS)
    return ok(stats)


@app.get("/api/admin/registrations")
async def admin_registrations(
    status: Optional[str] = None,
    year: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    actor: Actor = Depends(require_admin),
    store: RegistrationStore = Depends(get_store),
):
    total, rows = await store.list_registrations(
        payment_status=status, year=year, search=search,
        page=page, limit=limit,
    )
    return ok(
        [registration_view(r, include_proof=True) for r in rows],
        pagination={"page": page, "limit": limit, "total": total},
    )


@app.delete("/api/admin/registrations/{reg_id}")
async def admin_delete_registration(
    reg_id: str,
    actor: Actor = Depends(require_admin),
    store: RegistrationStore = Depends(get_store),
):
    await store.delete(reg_id, allowed=(PENDING, FAILED))
    logger.info("registration_deleted", registration_id=reg_id,
                admin=actor.username)
    return ok(message="registration deleted")


@app.get("/api/admin/entries")
async def admin_entries(
    day: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    actor: Actor = Depends(require_admin),
    store: RegistrationStore = Depends(get_store),
):
    total, rows = await store.list_entries(
        day=None if day is None else check_day(day),
        search=search, page=page, limit=limit,
    )
    return ok(
        [entry_view(e) for e in rows],
        pagination={"page": page, "limit": limit, "total": total},
    )


@app.get("/api/admin/entries/day/{day}")
async def admin_entries_for_day(
    day: str,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    actor: Actor = Depends(require_admin),
    store: RegistrationStore = Depends(get_store),
):
    d = check_day(day)
    total, rows = await store.list_entries(
        day=d, search=search, page=page, limit=limit,
    )
    return ok(
        [entry_view(e) for e in rows],
        day=d,
        pagination={"page": page, "limit": limit, "total": total},
    )


@app.post("/api/admin/notifications/bulk")
async def admin_bulk_notification(
    payload: BulkNotificationIn,
    actor: Actor = Depends(require_admin),
    workflow: PaymentWorkflow = Depends(get_workflow),
):
    async with timeit("notify.bulk"):
        summary = await workflow.send_bulk_notification(
            actor, payload.subject, payload.message, payload.target_group,
        )
    return ok(summary, message=f"sent {summary['sent']} of "
                               f"{summary['total']} messages")


def _coerce_setting(key: str, value):
    if key == "friend_offer_enabled":
        if not isinstance(value, bool):
            raise ValidationFailed("value must be true or false",
                                   {"fields": {"value": "boolean"}})
        return value
    if key == "friend_discount_amount":
        if (isinstance(value, bool) or not isinstance(value, int)
                or not 0 <= value <= BASE_PRICE):
            raise ValidationFailed(
                f"value must be an amount between 0 and {BASE_PRICE}",
                {"fields": {"value": "amount"}},
            )
        return value
    raise NotFound(f"unknown setting {key}")


@app.get("/api/admin/settings")
async def admin_settings(
    actor: Actor = Depends(require_admin),
    store: RegistrationStore = Depends(get_store),
):
    return ok(await store.all_settings())


@app.put("/api/admin/settings/{key}")
async def admin_update_setting(
    key: str, payload: SettingIn,
    actor: Actor = Depends(require_admin),
    store: RegistrationStore = Depends(get_store),
):
    value = _coerce_setting(key, payload.value)
    await store.set_setting(key, value, actor.username)
    logger.info("setting_changed", key=key, value=value,
                admin=actor.username)
    return ok({"key": key, "value": value})


@app.get("/api/admin/timings")
async def admin_timings(actor: Actor = Depends(require_admin)):
    return ok(aggregates())


@app.get("/api/health")
async def health(gateway: PaymentGateway = Depends(get_gateway)):
    return {"status": "ok", "eventCode": EVENT_CODE, "gateway": gateway.name,
            "otpBackend": OTP_BACKEND}
