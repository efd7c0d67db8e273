from datetime import timedelta

import pytest

from cron.batch import BatchReport, run_items
from cron.expiry_sweep import get_lapsed_subscription_ids, run_expiry_sweep
from cron.reevaluate_tiers import get_due_user_ids, is_due, run_tier_reevaluation
from db.models import Subscription, SubscriptionAction, SubscriptionStatus, User
from services.errors import DomainConflictError
from services.membership_svc import MembershipService, add_months
from services.tier_upgrade_svc import TierUpgradeService


class TestIsDue:

    def test_never_evaluated_new_member_is_not_due(self, make_user, now):
        user = make_user(membership_start_date=now - timedelta(days=5))
        assert not is_due(user, now, 30)

    def test_never_evaluated_established_member_is_due(self, make_user, now):
        user = make_user(membership_start_date=now - timedelta(days=30))
        assert is_due(user, now, 30)

    def test_without_membership_is_not_due(self, make_user, now):
        assert not is_due(make_user(), now, 30)

    def test_last_evaluation_decides(self, make_user, now):
        recent = make_user(username="recent", membership_start_date=now - timedelta(days=400),
                           last_tier_evaluation_date=now - timedelta(days=29))
        stale = make_user(username="stale", membership_start_date=now - timedelta(days=400),
                          last_tier_evaluation_date=now - timedelta(days=31))
        assert not is_due(recent, now, 30)
        assert is_due(stale, now, 30)

    def test_interval_comes_from_environment(self, make_user, now, monkeypatch):
        monkeypatch.delenv("TIER_EVALUATION_INTERVAL_DAYS", raising=False)
        user = make_user(last_tier_evaluation_date=now - timedelta(days=8))
        assert not is_due(user, now)

        monkeypatch.setenv("TIER_EVALUATION_INTERVAL_DAYS", "7")
        assert is_due(user, now)

    def test_due_ids_in_id_order(self, db, make_user, now):
        old = now - timedelta(days=60)
        a = make_user(username="a", membership_start_date=old)
        make_user(username="b")
        c = make_user(username="c", last_tier_evaluation_date=old)
        assert get_due_user_ids(db, now, 30) == [a.id, c.id]


class TestBatch:

    def test_one_failure_does_not_stop_the_rest(self, session_factory):
        def handle(db, item_id):
            if item_id == 2:
                raise RuntimeError("boom")
            return item_id == 3

        report = run_items(BatchReport("test"), session_factory, [1, 2, 3], handle, "Test")

        assert report.processed == 2
        assert report.changed == 1
        assert report.failed == 1
        assert report.failed_ids == [2]
        assert report.to_dict()["job"] == "test"


@pytest.fixture
def due_user_with_orders(db, make_user, add_order, now):
    def _make(username, orders):
        user = make_user(username=username, membership_start_date=now - timedelta(days=45))
        for _ in range(orders):
            add_order(user, 50)
        return user
    return _make


class TestTierReevaluation:

    def test_upgrades_eligible_users(self, db, session_factory, tiers, make_rule, silver_to_gold_criteria,
                                     due_user_with_orders, now):
        make_rule(tiers["silver"], tiers["gold"], silver_to_gold_criteria)
        busy = due_user_with_orders("busy", 6)
        quiet = due_user_with_orders("quiet", 1)

        report = run_tier_reevaluation(session_factory=session_factory, now=now)

        assert (report.processed, report.changed, report.failed) == (2, 1, 0)
        db.expire_all()
        assert db.get(User, busy.id).current_tier_level == 2
        assert db.get(User, quiet.id).current_tier_level == 1
        assert db.get(User, quiet.id).last_tier_evaluation_date == now

    def test_stamped_users_are_not_picked_up_again(self, db, session_factory, tiers, make_rule,
                                                  silver_to_gold_criteria, due_user_with_orders, now):
        make_rule(tiers["silver"], tiers["gold"], silver_to_gold_criteria)
        due_user_with_orders("busy", 6)

        run_tier_reevaluation(session_factory=session_factory, now=now)
        report = run_tier_reevaluation(session_factory=session_factory, now=now + timedelta(hours=1))

        assert report.processed == 0

    def test_failed_user_is_isolated(self, db, session_factory, tiers, make_rule, silver_to_gold_criteria,
                                     due_user_with_orders, now, monkeypatch):
        make_rule(tiers["silver"], tiers["gold"], silver_to_gold_criteria)
        first = due_user_with_orders("first", 6)
        broken = due_user_with_orders("broken", 6)
        last = due_user_with_orders("last", 6)

        original = TierUpgradeService.process_automatic_upgrades

        def flaky(self, user_id, actor="SYSTEM", now=None):
            if user_id == broken.id:
                raise RuntimeError("database hiccup")
            return original(self, user_id, actor, now=now)

        monkeypatch.setattr(TierUpgradeService, "process_automatic_upgrades", flaky)

        report = run_tier_reevaluation(session_factory=session_factory, now=now)

        assert (report.processed, report.changed, report.failed) == (2, 2, 1)
        assert report.failed_ids == [broken.id]
        db.expire_all()
        assert db.get(User, first.id).current_tier_level == 2
        assert db.get(User, last.id).current_tier_level == 2
        assert db.get(User, broken.id).current_tier_level == 1
        assert db.get(User, broken.id).last_tier_evaluation_date is None


class TestExpirySweep:

    def _subscribe(self, db, user, tier, plan, start, auto_renewal):
        subscription = MembershipService(db).subscribe(
            user.id, plan.id, tier.id, user.username, auto_renewal=auto_renewal, now=start
        )
        db.commit()
        return subscription

    def test_lapsed_without_auto_renewal_expires(self, db, session_factory, make_user, tiers, monthly_plan, now):
        user = make_user()
        subscription = self._subscribe(db, user, tiers["silver"], monthly_plan,
                                       add_months(now, -1) - timedelta(days=1), auto_renewal=False)

        report = run_expiry_sweep(session_factory=session_factory, now=now)

        assert (report.processed, report.changed, report.failed) == (1, 1, 0)
        db.expire_all()
        row = db.get(Subscription, subscription.id)
        assert row.status == SubscriptionStatus.EXPIRED
        history = MembershipService(db).get_subscription_history(user.id)
        assert history[-1].action == SubscriptionAction.CANCELLED
        assert history[-1].action_description == "Subscription expired"
        assert history[-1].performed_by == "SYSTEM"

    def test_lapsed_with_auto_renewal_continues_term(self, db, session_factory, make_user, tiers, monthly_plan, now):
        user = make_user()
        subscription = self._subscribe(db, user, tiers["silver"], monthly_plan,
                                       add_months(now, -1) - timedelta(days=2), auto_renewal=True)
        old_expiry = subscription.expiry_date
        assert old_expiry < now

        report = run_expiry_sweep(session_factory=session_factory, now=now)

        assert report.changed == 1
        db.expire_all()
        row = db.get(Subscription, subscription.id)
        assert row.status == SubscriptionStatus.ACTIVE
        assert row.expiry_date == add_months(old_expiry, 1)
        assert MembershipService(db).get_subscription_history(user.id)[-1].action == SubscriptionAction.RENEWED

    def test_running_twice_changes_nothing_more(self, db, session_factory, make_user, tiers, monthly_plan, now):
        user = make_user()
        self._subscribe(db, user, tiers["silver"], monthly_plan, add_months(now, -2), auto_renewal=False)

        run_expiry_sweep(session_factory=session_factory, now=now)
        report = run_expiry_sweep(session_factory=session_factory, now=now)

        assert report.processed == 0
        db.expire_all()
        assert len(MembershipService(db).get_subscription_history(user.id)) == 2

    def test_current_subscriptions_untouched(self, db, session_factory, make_user, tiers, monthly_plan, now):
        user = make_user()
        self._subscribe(db, user, tiers["silver"], monthly_plan, now - timedelta(days=3), auto_renewal=False)

        assert get_lapsed_subscription_ids(db, now) == []
        assert run_expiry_sweep(session_factory=session_factory, now=now).processed == 0

    def test_failed_renewal_is_isolated(self, db, session_factory, make_user, tiers, monthly_plan, now, monkeypatch):
        clash = make_user(username="clash")
        lapsed = self._subscribe(db, clash, tiers["silver"], monthly_plan, add_months(now, -2), auto_renewal=True)
        other = make_user(username="other")
        expiring = self._subscribe(db, other, tiers["silver"], monthly_plan, add_months(now, -2), auto_renewal=False)

        original = MembershipService.renew

        def flaky(self, subscription_id, actor, now=None):
            if subscription_id == lapsed.id:
                raise DomainConflictError("User already has another active subscription")
            return original(self, subscription_id, actor, now=now)

        monkeypatch.setattr(MembershipService, "renew", flaky)

        report = run_expiry_sweep(session_factory=session_factory, now=now)

        assert report.failed_ids == [lapsed.id]
        assert (report.processed, report.changed) == (1, 1)
        db.expire_all()
        assert db.get(Subscription, lapsed.id).expiry_date == add_months(add_months(now, -2), 1)
        assert db.get(Subscription, expiring.id).status == SubscriptionStatus.EXPIRED
