from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.redis import RedisJobStore
import logging
import os

logger = logging.getLogger(__name__)


def cron_hours():
    # read at registration time so values from .env are already loaded
    return (
        int(os.getenv("TIER_EVALUATION_CRON_HOUR", 2)),
        int(os.getenv("EXPIRY_SWEEP_CRON_HOUR", 3)),
    )


def build_jobstores(kind=None):
    kind = kind or os.getenv("SCHEDULER_JOBSTORE", "redis")
    if kind == "memory":
        return {"default": MemoryJobStore()}
    # Store jobs in Redis so they survive an app restart
    return {
        "default": RedisJobStore(
            jobs_key="membership:apscheduler:jobs",
            run_times_key="membership:apscheduler:run_times",
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", 6379)),
        )
    }


def build_scheduler(jobstore_kind=None):
    # Configure scheduler to handle missed jobs gracefully
    return BackgroundScheduler(
        jobstores=build_jobstores(jobstore_kind),
        job_defaults={
            'coalesce': True,  # If multiple runs are missed, combine them into one
            'max_instances': 1  # A batch never overlaps a still-running copy of itself
        },
        timezone='UTC'
    )


def register_jobs(sched):
    tier_hour, sweep_hour = cron_hours()
    # textual references so the Redis job store can serialize them
    sched.add_job(
        "cron.reevaluate_tiers:run_tier_reevaluation",
        trigger="cron",
        hour=tier_hour,
        minute=0,
        id="tier_reevaluation",
        replace_existing=True,
    )
    sched.add_job(
        "cron.expiry_sweep:run_expiry_sweep",
        trigger="cron",
        hour=sweep_hour,
        minute=0,
        id="expiry_sweep",
        replace_existing=True,
    )
    logger.info(
        f"[Scheduler] Registered tier_reevaluation at {tier_hour:02d}:00 UTC "
        f"and expiry_sweep at {sweep_hour:02d}:00 UTC"
    )
    return sched


scheduler = build_scheduler()
