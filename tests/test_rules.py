from __future__ import annotations

import pydantic
import pytest

from bankrecon.db.session import session_scope
from bankrecon.errors import NotFoundError, ValidationError
from bankrecon.schemas.rule import MatchingRuleCreate, MatchingRuleUpdate
from bankrecon.services.rules import RuleStore, default_rule


def test_defaults_come_from_settings():
    rule = default_rule()
    assert rule.rule_id is None
    assert (rule.min_match_score, rule.auto_match_score) == (70, 95)
    assert rule.amount_tolerance_percent == 1.0
    assert rule.date_tolerance_days == 7
    assert rule.weight_sum == 100


def test_weights_over_100_rejected():
    with pytest.raises(pydantic.ValidationError):
        MatchingRuleCreate(name="greedy", reference_weight=60)


def test_min_above_auto_rejected():
    with pytest.raises(pydantic.ValidationError):
        MatchingRuleCreate(name="backwards", min_match_score=90, auto_match_score=80)


def test_field_bounds():
    with pytest.raises(pydantic.ValidationError):
        MatchingRuleCreate(name="wide", amount_tolerance_percent=11)
    with pytest.raises(pydantic.ValidationError):
        MatchingRuleCreate(name="late", date_tolerance_days=31)


def test_effective_rule_prefers_priority(session_factory, business):
    with session_scope(session_factory) as db:
        store = RuleStore(db)
        assert store.effective_rule(business).rule_id is None

        low = store.create_rule(business_id=business, data=MatchingRuleCreate(name="low", priority=5))
        high = store.create_rule(
            business_id=business, data=MatchingRuleCreate(name="high", priority=90, min_match_score=50)
        )
        assert [r.name for r in store.active_rules(business)] == ["high", "low"]

        effective = store.effective_rule(business)
        assert effective.rule_id == high.id
        assert effective.min_match_score == 50

        store.deactivate_rule(high.id)
        assert store.effective_rule(business).rule_id == low.id


def test_deactivated_rules_are_kept(session_factory, business):
    with session_scope(session_factory) as db:
        store = RuleStore(db)
        rule = store.create_rule(business_id=business, data=MatchingRuleCreate(name="old"))
        store.deactivate_rule(rule.id)

        assert store.list_rules(business_id=business) == []
        kept = store.list_rules(business_id=business, include_inactive=True)
        assert [r.id for r in kept] == [rule.id]
        assert kept[0].is_active is False


def test_partial_update_validates_merged_rule(session_factory, business):
    with session_scope(session_factory) as db:
        store = RuleStore(db)
        rule = store.create_rule(business_id=business, data=MatchingRuleCreate(name="base", reference_weight=40))

        updated = store.update_rule(rule.id, MatchingRuleUpdate(counterparty_weight=20, description="tuned"))
        assert updated.counterparty_weight == 20
        assert updated.description == "tuned"

        with pytest.raises(ValidationError, match="at most 100"):
            store.update_rule(rule.id, MatchingRuleUpdate(reference_weight=50))
        with pytest.raises(ValidationError):
            store.update_rule(rule.id, MatchingRuleUpdate(min_match_score=99))
        assert rule.reference_weight == 40


def test_unknown_rule(session_factory):
    with session_scope(session_factory) as db:
        with pytest.raises(NotFoundError):
            RuleStore(db).deactivate_rule(12345)
