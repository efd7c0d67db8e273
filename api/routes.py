# api/routes.py

import logging
import os
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Body, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cron.expiry_sweep import run_expiry_sweep
from cron.reevaluate_tiers import run_tier_reevaluation
from db.models import Order, OrderStatus, Subscription, User, get_session_factory
from services.errors import MembershipError, NotFoundError, DomainConflictError, InvalidRequestError
from services.membership_svc import MembershipService, to_projection, history_to_dict
from services.producer import publish_order_completed
from services.scheduler import scheduler, register_jobs
from services.tier_upgrade_svc import TierUpgradeService

logger = logging.getLogger(__name__)

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"

app = FastAPI(title="Membership tiers")

ERROR_STATUS = {
    NotFoundError: 404,
    DomainConflictError: 409,
    InvalidRequestError: 400,
}


@app.on_event("startup")
def start_scheduler():
    if not SCHEDULER_ENABLED:
        return
    register_jobs(scheduler)
    scheduler.start()
    logger.info("[Scheduler] Started")


@app.on_event("shutdown")
def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("[Scheduler] Stopped")


@app.exception_handler(MembershipError)
async def membership_error_handler(request: Request, exc: MembershipError):
    status = ERROR_STATUS.get(type(exc), 400)
    logger.warning(f"[API] {request.method} {request.url.path} -> {status} {exc.code}: {exc.message}")
    return JSONResponse(status_code=status, content=exc.to_dict())


def get_db():
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def require_fields(payload, *fields):
    missing = [f for f in fields if (payload or {}).get(f) is None]
    if missing:
        raise InvalidRequestError(f"Missing required fields: {', '.join(missing)}", {"missing": missing})
    return payload


def parse_amount(payload, field):
    try:
        return Decimal(str(payload[field]))
    except InvalidOperation:
        raise InvalidRequestError(f"{field} must be a number", {field: payload[field]}) from None


def resolve_actor(db, user_id, x_actor_id):
    if x_actor_id:
        return x_actor_id
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User not found with ID: {user_id}", {"user_id": user_id})
    return user.username


# tier upgrade evaluation

@app.get("/users/{user_id}/tier-upgrade/evaluate")
def evaluate_tier_upgrade(user_id: int, db: Session = Depends(get_db)):
    results = TierUpgradeService(db).evaluate(user_id)
    return {"user_id": user_id, "results": [r.to_dict() for r in results]}


@app.get("/users/{user_id}/tier-upgrade/evaluate/detailed")
def evaluate_tier_upgrade_detailed(user_id: int, db: Session = Depends(get_db)):
    results = TierUpgradeService(db).get_detailed_evaluation_results(user_id)
    return {"user_id": user_id, "results": [r.to_dict() for r in results]}


@app.get("/users/{user_id}/tier-upgrade/applicable-rules")
def get_applicable_rules(user_id: int, db: Session = Depends(get_db)):
    rules = TierUpgradeService(db).get_applicable_rules(user_id)
    return {"user_id": user_id, "rules": [r.to_dict() for r in rules]}


@app.get("/users/{user_id}/tier-upgrade/best-rule")
def get_best_rule(user_id: int, db: Session = Depends(get_db)):
    rule = TierUpgradeService(db).get_best_applicable_rule(user_id)
    return {"user_id": user_id, "rule": rule.to_dict() if rule else None}


@app.get("/users/{user_id}/tier-upgrade/eligibility")
def check_eligibility(user_id: int, db: Session = Depends(get_db)):
    return {"user_id": user_id, "eligible": TierUpgradeService(db).is_eligible_for_upgrade(user_id)}


@app.post("/users/{user_id}/tier-upgrade/process")
def process_automatic_upgrades(user_id: int, db: Session = Depends(get_db)):
    upgraded = TierUpgradeService(db).process_automatic_upgrades(user_id)
    db.commit()
    return {"user_id": user_id, "upgraded": upgraded}


# subscription lifecycle

@app.get("/users/{user_id}/subscription")
def get_current_subscription(user_id: int, db: Session = Depends(get_db)):
    subscription = MembershipService(db).get_current_subscription(user_id)
    return {"user_id": user_id, "subscription": to_projection(subscription)}


@app.get("/users/{user_id}/subscription/history")
def get_subscription_history(user_id: int, db: Session = Depends(get_db)):
    entries = MembershipService(db).get_subscription_history(user_id)
    return {"user_id": user_id, "history": [history_to_dict(e) for e in entries]}


@app.post("/users/{user_id}/subscription")
def subscribe(user_id: int, payload: dict, db: Session = Depends(get_db),
              x_actor_id: str = Header(default=None)):
    require_fields(payload, "plan_id", "tier_id")
    actor = resolve_actor(db, user_id, x_actor_id)
    subscription = MembershipService(db).subscribe(
        user_id,
        payload["plan_id"],
        payload["tier_id"],
        actor,
        auto_renewal=payload.get("auto_renewal", True),
    )
    db.commit()
    return to_projection(subscription)


@app.post("/users/{user_id}/subscription/cancel")
def cancel_subscription(user_id: int, payload: dict, db: Session = Depends(get_db),
                        x_actor_id: str = Header(default=None)):
    actor = resolve_actor(db, user_id, x_actor_id)
    subscription = MembershipService(db).cancel(user_id, payload.get("reason"), actor)
    db.commit()
    return to_projection(subscription)


@app.post("/users/{user_id}/subscription/renew")
def renew_subscription(user_id: int, payload: dict = Body(default=None), db: Session = Depends(get_db),
                       x_actor_id: str = Header(default=None)):
    actor = resolve_actor(db, user_id, x_actor_id)
    service = MembershipService(db)
    subscription_id = (payload or {}).get("subscription_id")
    if subscription_id is None:
        current = service.get_current_subscription(user_id)
        if current is None:
            raise NotFoundError(f"No active subscription found for user: {user_id}", {"user_id": user_id})
        subscription_id = current.id
    else:
        owned = db.get(Subscription, subscription_id)
        if owned is None or owned.user_id != user_id:
            raise NotFoundError(f"Subscription {subscription_id} not found for user {user_id}")

    subscription = service.renew(subscription_id, actor)
    db.commit()
    return to_projection(subscription)


@app.post("/users/{user_id}/subscription/tier")
def change_tier(user_id: int, payload: dict, db: Session = Depends(get_db),
                x_actor_id: str = Header(default=None)):
    require_fields(payload, "target_tier_id", "direction")
    actor = resolve_actor(db, user_id, x_actor_id)
    subscription = MembershipService(db).change_tier(
        user_id, payload["target_tier_id"], str(payload["direction"]).upper(), actor
    )
    db.commit()
    return {"user_id": user_id, "subscription": to_projection(subscription)}


# orders

@app.post("/orders")
def record_order(payload: dict, db: Session = Depends(get_db)):
    require_fields(payload, "user_id", "total_amount")
    try:
        status = OrderStatus(payload.get("status", OrderStatus.COMPLETED.value))
    except ValueError:
        raise InvalidRequestError(f"Unknown order status: {payload['status']}", {"status": payload["status"]}) from None

    if db.get(User, payload["user_id"]) is None:
        raise NotFoundError(f"User not found with ID: {payload['user_id']}")

    order = Order(
        user_id=payload["user_id"],
        order_number=payload.get("order_number") or f"ORD-{uuid.uuid4().hex[:12].upper()}",
        status=status,
        total_amount=parse_amount(payload, "total_amount"),
        final_amount=parse_amount(payload, "final_amount") if payload.get("final_amount") is not None else None,
        created_at=datetime.utcnow(),
    )
    db.add(order)
    db.commit()
    db.refresh(order)

    if order.status == OrderStatus.COMPLETED:
        publish_order_completed(order)

    return {"order_id": order.id, "order_number": order.order_number, "status": order.status.value}


# admin: run the batch jobs now instead of waiting for the schedule

@app.post("/admin/jobs/tier-reevaluation")
def trigger_tier_reevaluation():
    return run_tier_reevaluation().to_dict()


@app.post("/admin/jobs/expiry-sweep")
def trigger_expiry_sweep():
    return run_expiry_sweep().to_dict()
