from __future__ import annotations

import logging

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from bankrecon.config import settings
from bankrecon.errors import NotFoundError
from bankrecon.models.models import MatchingRule
from bankrecon.schemas.rule import MatchingRuleCreate, MatchingRuleUpdate, check_rule_values
from bankrecon.utils.scoring import ScoringRule

logger = logging.getLogger(__name__)


def default_rule() -> ScoringRule:
    return ScoringRule.from_source(settings)


class RuleStore:
    """Tunable matching parameters per business. Rules are deactivated, never deleted."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def create_rule(self, *, business_id: int, data: MatchingRuleCreate) -> MatchingRule:
        rule = MatchingRule(business_id=business_id, is_active=True, **data.model_dump())
        self.db.add(rule)
        self.db.flush()
        logger.info("Matching rule created", extra={"rule_id": rule.id, "business_id": business_id})
        return rule

    def get_rule(self, rule_id: int) -> MatchingRule:
        rule = self.db.get(MatchingRule, rule_id)
        if rule is None:
            raise NotFoundError("Matching rule not found")
        return rule

    def list_rules(self, *, business_id: int, include_inactive: bool = False) -> list[MatchingRule]:
        stmt = select(MatchingRule).where(MatchingRule.business_id == business_id)
        if not include_inactive:
            stmt = stmt.where(MatchingRule.is_active.is_(True))
        stmt = stmt.order_by(MatchingRule.priority.desc(), MatchingRule.id)
        return list(self.db.scalars(stmt))

    def active_rules(self, business_id: int) -> list[MatchingRule]:
        return self.list_rules(business_id=business_id)

    def update_rule(self, rule_id: int, updates: MatchingRuleUpdate) -> MatchingRule:
        rule = self.get_rule(rule_id)
        changes = {
            k: v for k, v in updates.model_dump(exclude_unset=True).items() if v is not None or k == "description"
        }

        merged = {c.key: getattr(rule, c.key) for c in MatchingRule.__table__.columns}
        merged.update(changes)
        check_rule_values(merged)

        for key, value in changes.items():
            setattr(rule, key, value)
        self.db.flush()
        logger.info("Matching rule updated", extra={"rule_id": rule_id, "fields": sorted(changes)})
        return rule

    def deactivate_rule(self, rule_id: int) -> MatchingRule:
        rule = self.get_rule(rule_id)
        rule.is_active = False
        self.db.flush()
        logger.info("Matching rule deactivated", extra={"rule_id": rule_id})
        return rule

    def effective_rule(self, business_id: int) -> ScoringRule:
        """Highest-priority active rule, or the configured defaults."""
        stmt = (
            select(MatchingRule)
            .where(and_(MatchingRule.business_id == business_id, MatchingRule.is_active.is_(True)))
            .order_by(MatchingRule.priority.desc(), MatchingRule.id)
            .limit(1)
        )
        rule = self.db.scalar(stmt)
        if rule is None:
            return default_rule()
        return ScoringRule.from_source(rule, rule_id=rule.id)
