import json
import logging
import os

from dotenv import load_dotenv
load_dotenv()

from confluent_kafka import Consumer

from db.models import SYSTEM_ACTOR, get_session_factory
from services.errors import MembershipError
from services.producer import order_completed_topic
from services.tier_upgrade_svc import TierUpgradeService

logger = logging.getLogger(__name__)


def handle_event(session_factory, raw_value):
    """Apply automatic upgrades for the event's user. Returns True when the tier changed."""
    event = json.loads(raw_value.decode('utf-8'))
    user_id = event.get("user_id")

    if not user_id:
        logger.warning("[Consumer] Skipping, no user_id")
        return False

    logger.info(f"[Consumer] Received order event for user: {user_id}")

    db = session_factory()
    try:
        changed = TierUpgradeService(db).process_automatic_upgrades(user_id, SYSTEM_ACTOR)
        db.commit()
        logger.info(f"[Consumer] User {user_id} upgraded: {changed}")
        return changed
    except MembershipError as e:
        db.rollback()
        logger.warning(f"[Consumer] Skipping user {user_id}: {e.message}")
        return False
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def main():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    session_factory = get_session_factory()

    c = Consumer({
        'bootstrap.servers': os.getenv("KAFKA_SERVERS", "localhost:9092"),
        'group.id': os.getenv("KAFKA_GROUP_ID", 'membership-tier-group'),
        'auto.offset.reset': 'earliest'
    })

    topic = order_completed_topic()
    c.subscribe([topic])
    logger.info(f"[Consumer] Listening for {topic} events...")

    try:
        while True:
            msg = c.poll(1.0)

            if msg is None:
                continue
            if msg.error():
                logger.error(f"[Consumer] Error: {msg.error()}")
                continue

            try:
                handle_event(session_factory, msg.value())
            except Exception as e:
                # the nightly re-evaluation is the fallback for anything missed here
                logger.exception(f"[Consumer] Error: {e}")
    finally:
        c.close()

if __name__ == "__main__":
    main()
