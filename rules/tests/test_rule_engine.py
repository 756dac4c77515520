"""
Unit Tests for the Rule Engine

Tests cover:
1. Condition operators and nested groups
2. Priority ordering of matches
3. The referral commission table
4. Dict serialization of rules
"""

from decimal import Decimal

from rules import (
    COMMISSION_TABLE,
    Action,
    ActionType,
    Condition,
    ConditionGroup,
    ConditionOperator,
    LogicalOperator,
    Rule,
    RuleEngine,
    TriggerEvent,
    create_commission_rules,
)


def rate(engine, role):
    return engine.action_param(
        TriggerEvent.FIRST_RECHARGE_COMPLETED, {"referrer": {"role": role}},
        ActionType.CREDIT_COMMISSION, "rate", default=Decimal("0"),
    )


class TestConditions:

    def test_nested_field_lookup(self):
        cond = Condition(field="referrer.role", operator=ConditionOperator.EQUALS, value="DISTRIBUTOR")
        assert cond.evaluate({"referrer": {"role": "DISTRIBUTOR"}})
        assert not cond.evaluate({"referrer": {}})
        assert not cond.evaluate({})

    def test_in_and_not_in(self):
        roles = ["DISTRIBUTOR", "PROVIDER"]
        assert Condition("role", ConditionOperator.IN, roles).evaluate({"role": "PROVIDER"})
        assert not Condition("role", ConditionOperator.IN, roles).evaluate({"role": "STANDARD"})
        assert Condition("role", ConditionOperator.NOT_IN, roles).evaluate({"role": "STANDARD"})

    def test_comparisons_ignore_missing_values(self):
        assert Condition("amount", ConditionOperator.GREATER_THAN, 10).evaluate({"amount": 11})
        assert not Condition("amount", ConditionOperator.GREATER_THAN, 10).evaluate({})
        assert Condition("amount", ConditionOperator.LESS_THAN, 10).evaluate({"amount": 9})

    def test_group_operators(self):
        is_first = Condition("first", ConditionOperator.IS_TRUE)
        is_admin = Condition("role", ConditionOperator.EQUALS, "ADMIN")
        context = {"first": True, "role": "STANDARD"}

        assert not ConditionGroup(LogicalOperator.AND, [is_first, is_admin]).evaluate(context)
        assert ConditionGroup(LogicalOperator.OR, [is_first, is_admin]).evaluate(context)
        assert ConditionGroup(LogicalOperator.AND, []).evaluate(context)


class TestCommissionTable:

    def test_rates(self):
        engine = RuleEngine(create_commission_rules())

        assert rate(engine, "DISTRIBUTOR_PREMIUM") == Decimal("0.15")
        assert rate(engine, "DISTRIBUTOR") == Decimal("0.10")
        assert rate(engine, "PROVIDER") == Decimal("0.10")
        assert rate(engine, "PROVIDER_PREMIUM") == Decimal("0")
        assert rate(engine, "STANDARD") == Decimal("0")

    def test_highest_priority_match_wins(self):
        engine = RuleEngine(create_commission_rules())
        engine.add_rule(Rule(
            id="promo", name="Promo", trigger=TriggerEvent.FIRST_RECHARGE_COMPLETED,
            conditions=Condition("referrer.role", ConditionOperator.EQUALS, "DISTRIBUTOR"),
            actions=[Action(ActionType.CREDIT_COMMISSION, {"rate": Decimal("0.20")})],
            priority=50,
        ))

        assert rate(engine, "DISTRIBUTOR") == Decimal("0.20")
        assert [r.id for r in engine.list_rules()][0] == "promo"

        engine.remove_rule("promo")
        assert rate(engine, "DISTRIBUTOR") == Decimal("0.10")

    def test_inactive_rule_is_skipped(self):
        engine = RuleEngine(create_commission_rules())
        engine.get_rule("commission-distributor-premium").is_active = False

        assert rate(engine, "DISTRIBUTOR_PREMIUM") == Decimal("0")


class TestSerialization:

    def test_rule_survives_dict_round_trip(self):
        rule = create_commission_rules()[1]

        restored = Rule.from_dict(rule.to_dict())

        assert restored.id == rule.id
        assert restored.priority == 10
        assert restored.evaluate({"referrer": {"role": "PROVIDER"}})
        assert restored.actions[0].params["rate"] == "0.10"

    def test_commission_table_rates_load_as_decimal(self):
        rules = create_commission_rules()

        assert [r.id for r in rules] == [entry["id"] for entry in COMMISSION_TABLE]
        assert all(isinstance(r.param(ActionType.CREDIT_COMMISSION, "rate"), Decimal) for r in rules)

    def test_custom_table_replaces_defaults(self):
        table = [
            {
                "id": "commission-everyone",
                "name": "Flat commission",
                "trigger": "first_recharge_completed",
                "conditions": {"operator": "AND", "conditions": []},
                "actions": [{"type": "credit_commission", "params": {"rate": "0.05"}}],
            },
        ]
        engine = RuleEngine(create_commission_rules(table))

        assert rate(engine, "STANDARD") == Decimal("0.05")
        assert rate(engine, "DISTRIBUTOR_PREMIUM") == Decimal("0.05")
