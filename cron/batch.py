# cron/batch.py

import logging
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    job: str
    processed: int = 0
    changed: int = 0
    failed: int = 0
    failed_ids: List[int] = field(default_factory=list)

    def to_dict(self):
        return {
            "job": self.job,
            "processed": self.processed,
            "changed": self.changed,
            "failed": self.failed,
            "failed_ids": list(self.failed_ids),
        }


def run_items(report, session_factory, item_ids, handle, tag):
    """
    Run `handle(db, item_id) -> bool` for each id, one session and one
    transaction per item. A failing item is rolled back, logged and counted;
    the loop moves on to the next one. No retries within a run.
    """
    for item_id in item_ids:
        db = session_factory()
        try:
            changed = handle(db, item_id)
            db.commit()
            report.processed += 1
            if changed:
                report.changed += 1
        except Exception as e:
            db.rollback()
            report.failed += 1
            report.failed_ids.append(item_id)
            logger.exception(f"[{tag}] Error for item {item_id}: {e}")
        finally:
            db.close()
    return report
