import logging
import os
from datetime import datetime

from dotenv import load_dotenv
load_dotenv()

from cron.batch import BatchReport, run_items
from db.models import Subscription, SubscriptionStatus, SYSTEM_ACTOR, get_session_factory
from services.membership_svc import MembershipService

logger = logging.getLogger(__name__)


def get_lapsed_subscription_ids(db, now):
    rows = db.query(Subscription.id)\
        .filter(Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.expiry_date <= now)\
        .order_by(Subscription.id)\
        .all()
    return [row.id for row in rows]


def run_expiry_sweep(session_factory=None, now=None):
    session_factory = session_factory or get_session_factory()
    now = now or datetime.utcnow()
    logger.info(f"[Sweep] Starting expiry sweep at {now}")

    db = session_factory()
    try:
        subscription_ids = get_lapsed_subscription_ids(db, now)
    finally:
        db.close()

    if not subscription_ids:
        logger.info("[Sweep] No expired subscriptions found")
    else:
        logger.info(f"[Sweep] Found {len(subscription_ids)} expired subscriptions to process")

    def handle(db, subscription_id):
        service = MembershipService(db)
        subscription = db.get(Subscription, subscription_id)
        # picked up by another run (or renewed interactively) since selection
        if subscription.status != SubscriptionStatus.ACTIVE or subscription.expiry_date > now:
            return False
        if subscription.auto_renewal:
            service.renew(subscription_id, SYSTEM_ACTOR, now=now)
            logger.info(f"[Sweep] Auto-renewed subscription {subscription_id} for user {subscription.user_id}")
        else:
            service.expire(subscription_id, now=now)
            logger.info(f"[Sweep] Marked subscription {subscription_id} as expired for user {subscription.user_id}")
        return True

    report = run_items(BatchReport("expiry_sweep"), session_factory, subscription_ids, handle, "Sweep")
    logger.info(
        f"[Sweep] Done. Processed: {report.processed}, "
        f"Changed: {report.changed}, Failed: {report.failed}"
    )
    return report


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    run_expiry_sweep()
