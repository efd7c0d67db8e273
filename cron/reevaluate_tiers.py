import logging
import os
from datetime import datetime, timedelta

from dotenv import load_dotenv
load_dotenv()

from cron.batch import BatchReport, run_items
from db.models import User, SYSTEM_ACTOR, get_session_factory
from services.tier_upgrade_svc import TierUpgradeService

logger = logging.getLogger(__name__)


def evaluation_interval_days():
    return int(os.getenv("TIER_EVALUATION_INTERVAL_DAYS", 30))


def is_due(user, now, interval_days=None):
    interval = timedelta(days=interval_days or evaluation_interval_days())
    if user.last_tier_evaluation_date is not None:
        return now - user.last_tier_evaluation_date >= interval
    # never evaluated: wait until the member has been around for one interval
    if user.membership_start_date is None:
        return False
    return now - user.membership_start_date >= interval


def get_due_user_ids(db, now, interval_days=None):
    interval_days = interval_days or evaluation_interval_days()
    users = db.query(User).order_by(User.id).all()
    return [u.id for u in users if is_due(u, now, interval_days)]


def run_tier_reevaluation(session_factory=None, now=None):
    session_factory = session_factory or get_session_factory()
    now = now or datetime.utcnow()
    logger.info(f"[TierJob] Starting tier re-evaluation at {now}")

    db = session_factory()
    try:
        user_ids = get_due_user_ids(db, now)
    finally:
        db.close()
    logger.info(f"[TierJob] Found {len(user_ids)} users due for evaluation")

    def handle(db, user_id):
        return TierUpgradeService(db).process_automatic_upgrades(user_id, SYSTEM_ACTOR, now=now)

    report = run_items(BatchReport("tier_reevaluation"), session_factory, user_ids, handle, "TierJob")
    logger.info(
        f"[TierJob] Done. Processed: {report.processed}, "
        f"Upgraded: {report.changed}, Failed: {report.failed}"
    )
    return report


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    run_tier_reevaluation()
