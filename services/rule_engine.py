# services/rule_engine.py

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from services.criteria import (
    CriteriaDefinition, EvaluationContext, EvaluationResult, evaluate_criteria
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierUpgradeRuleDefinition:
    id: Optional[int]
    rule_name: str
    source_tier_id: int
    target_tier_id: int
    criteria: Tuple[CriteriaDefinition, ...] = ()
    auto_upgrade: bool = False
    active: bool = True
    rule_description: Optional[str] = None
    target_tier_level: Optional[int] = None

    @classmethod
    def from_model(cls, rule):
        return cls(
            id=rule.id,
            rule_name=rule.rule_name,
            rule_description=rule.rule_description,
            source_tier_id=rule.source_tier_id,
            target_tier_id=rule.target_tier_id,
            target_tier_level=rule.target_tier.tier_level if rule.target_tier else None,
            criteria=tuple(CriteriaDefinition.from_dict(c) for c in (rule.criteria or [])),
            auto_upgrade=bool(rule.auto_upgrade),
            active=bool(rule.active),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "rule_name": self.rule_name,
            "rule_description": self.rule_description,
            "source_tier_id": self.source_tier_id,
            "target_tier_id": self.target_tier_id,
            "target_tier_level": self.target_tier_level,
            "auto_upgrade": self.auto_upgrade,
            "active": self.active,
            "criteria": [c.to_dict() for c in self.criteria],
        }


def evaluate_rule(rule: TierUpgradeRuleDefinition, context: EvaluationContext) -> List[EvaluationResult]:
    """One result per criterion, in declaration order."""
    return [evaluate_criteria(criteria, context) for criteria in rule.criteria]


def is_eligible(rule: TierUpgradeRuleDefinition, context: EvaluationContext) -> bool:
    # AND across all criteria; logical_condition is not interpreted
    results = evaluate_rule(rule, context)
    passed = all(r.passed for r in results)

    if passed:
        logger.debug(f"[Rules] {rule.rule_name} passed all criteria for user {context.user_id}")
    else:
        failed = [r.criteria_type for r in results if not r.passed]
        logger.debug(f"[Rules] {rule.rule_name} failed for user {context.user_id}: {failed}")
    return passed


def _target_rank(rule):
    if rule.target_tier_level is not None:
        return rule.target_tier_level
    return rule.target_tier_id


def find_best_applicable_rule(
    rules: Sequence[TierUpgradeRuleDefinition],
    context: EvaluationContext,
) -> Optional[TierUpgradeRuleDefinition]:
    """
    Highest target tier among active, eligible rules.

    Tiers between the source and the chosen target are not checked: a rule
    that jumps straight from 1 to 3 wins over 1 to 2 whenever both pass.
    Ties keep the first rule in the given order.
    """
    best = None
    for rule in rules:
        if not rule.active or not is_eligible(rule, context):
            continue
        if best is None or _target_rank(rule) > _target_rank(best):
            best = rule
    return best
