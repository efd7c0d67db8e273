from apscheduler.triggers.cron import CronTrigger

from db.models import MembershipPlan, MembershipTier, TierUpgradeRule
from services.scheduler import build_scheduler, register_jobs
from services.seed import seed_reference_data


def test_register_jobs():
    sched = register_jobs(build_scheduler("memory"))

    jobs = {job.id: job for job in sched.get_jobs()}
    assert set(jobs) == {"tier_reevaluation", "expiry_sweep"}
    assert isinstance(jobs["tier_reevaluation"].trigger, CronTrigger)
    assert jobs["tier_reevaluation"].func_ref == "cron.reevaluate_tiers:run_tier_reevaluation"
    assert jobs["expiry_sweep"].func_ref == "cron.expiry_sweep:run_expiry_sweep"


def test_seed_reference_data(db):
    seed_reference_data(db)

    levels = [t.tier_level for t in db.query(MembershipTier).order_by(MembershipTier.tier_level)]
    assert levels == [1, 2, 3]
    assert db.query(MembershipPlan).count() == 9

    rules = {r.rule_name: r for r in db.query(TierUpgradeRule).all()}
    assert rules["Silver to Gold Auto-Upgrade"].auto_upgrade is True
    assert rules["Silver to Platinum Direct Upgrade"].auto_upgrade is False
    assert rules["Silver to Gold Auto-Upgrade"].target_tier.name == "Gold"


def test_seed_is_idempotent(db):
    seed_reference_data(db)
    seed_reference_data(db)
    assert db.query(MembershipTier).count() == 3
    assert db.query(TierUpgradeRule).count() == 3


def test_cron_hours_read_at_registration(monkeypatch):
    monkeypatch.setenv("TIER_EVALUATION_CRON_HOUR", "5")
    monkeypatch.setenv("EXPIRY_SWEEP_CRON_HOUR", "6")

    sched = register_jobs(build_scheduler("memory"))

    jobs = {job.id: job for job in sched.get_jobs()}
    hours = {job_id: str(job.trigger.fields[5]) for job_id, job in jobs.items()}
    assert hours == {"tier_reevaluation": "5", "expiry_sweep": "6"}
