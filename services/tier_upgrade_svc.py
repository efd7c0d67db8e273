# services/tier_upgrade_svc.py

import logging
from datetime import datetime

from db.models import User, MembershipTier, Order, OrderStatus, TierUpgradeRule, SYSTEM_ACTOR
from services.context_builder import EvaluationContextBuilder
from services.errors import NotFoundError
from services.membership_svc import MembershipService, TierChangeDirection
from services.rule_engine import (
    TierUpgradeRuleDefinition, evaluate_rule, find_best_applicable_rule
)

logger = logging.getLogger(__name__)


class TierUpgradeService:

    def __init__(self, db):
        self.db = db
        self.context_builder = EvaluationContextBuilder(db)
        self.membership = MembershipService(db)

    def _get_user(self, user_id):
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User not found with ID: {user_id}", {"user_id": user_id})
        return user

    def _rules_for(self, user):
        # only rules starting at the user's current level; no chaining across tiers
        rules = self.db.query(TierUpgradeRule)\
            .join(MembershipTier, MembershipTier.id == TierUpgradeRule.source_tier_id)\
            .filter(MembershipTier.tier_level == user.current_tier_level,
                    TierUpgradeRule.active.is_(True))\
            .order_by(TierUpgradeRule.id)\
            .all()
        return [TierUpgradeRuleDefinition.from_model(r) for r in rules]

    def _has_new_orders(self, user):
        if user.last_tier_evaluation_date is None:
            return True
        return self.db.query(Order.id)\
            .filter(Order.user_id == user.id,
                    Order.status == OrderStatus.COMPLETED,
                    Order.created_at > user.last_tier_evaluation_date)\
            .first() is not None

    def _best_rule(self, user, now=None):
        context = self.context_builder.build_context(user, now=now)
        rule = find_best_applicable_rule(self._rules_for(user), context)
        return rule, context

    def get_applicable_rules(self, user_id):
        return self._rules_for(self._get_user(user_id))

    def get_best_applicable_rule(self, user_id, now=None):
        rule, _ = self._best_rule(self._get_user(user_id), now=now)
        return rule

    def is_eligible_for_upgrade(self, user_id, now=None):
        return self.get_best_applicable_rule(user_id, now=now) is not None

    def evaluate(self, user_id, now=None):
        """Per-criterion results for the best rule, or [] when nothing applies."""
        logger.info(f"[TierUpgrade] Evaluating tier upgrade for user {user_id}")
        rule, context = self._best_rule(self._get_user(user_id), now=now)
        if rule is None:
            logger.info(f"[TierUpgrade] No applicable upgrade rules for user {user_id}")
            return []
        return evaluate_rule(rule, context)

    def get_detailed_evaluation_results(self, user_id, now=None):
        user = self._get_user(user_id)
        context = self.context_builder.build_context(user, now=now)
        results = []
        for rule in self._rules_for(user):
            results.extend(evaluate_rule(rule, context))
        return results

    def process_automatic_upgrades(self, user_id, actor=SYSTEM_ACTOR, now=None):
        """
        Apply the best auto-upgrade rule, if any. Returns True when the tier changed.

        Only runs when the user completed an order since the last evaluation,
        so repeating a call can't walk a chain of rules (Silver->Gold->Platinum)
        on the same order history.
        """
        now = now or datetime.utcnow()
        user = self._get_user(user_id)

        if not self._has_new_orders(user):
            logger.info(f"[TierUpgrade] No completed orders for user {user_id} since {user.last_tier_evaluation_date}, skipping")
            user.last_tier_evaluation_date = now
            self.db.flush()
            return False

        rule, _ = self._best_rule(user, now=now)

        changed = False
        if rule is None:
            logger.info(f"[TierUpgrade] No automatic upgrade available for user {user_id}")
        elif not rule.auto_upgrade:
            logger.info(f"[TierUpgrade] Rule {rule.rule_name} needs approval, not applying for user {user_id}")
        elif rule.target_tier_level is not None and rule.target_tier_level <= user.current_tier_level:
            logger.warning(f"[TierUpgrade] Rule {rule.rule_name} does not target a higher tier, skipping user {user_id}")
        else:
            logger.info(f"[TierUpgrade] Auto-upgrading user {user_id} to tier {rule.target_tier_id}")
            self.membership.change_tier(
                user_id, rule.target_tier_id, TierChangeDirection.UPGRADE, actor, now=now
            )
            changed = True

        user.last_tier_evaluation_date = now
        self.db.flush()
        return changed
