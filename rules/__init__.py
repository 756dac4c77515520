"""
Rules Engine Package

Declarative rules (conditions, condition groups, actions, triggers) used to
express the referral commission table.
"""

from .rule_engine import (
    RuleEngine,
    Rule,
    Condition,
    ConditionGroup,
    Action,
    ConditionOperator,
    LogicalOperator,
    ActionType,
    TriggerEvent,
    COMMISSION_TABLE,
    create_commission_rules,
)

__all__ = [
    "RuleEngine",
    "Rule",
    "Condition",
    "ConditionGroup",
    "Action",
    "ConditionOperator",
    "LogicalOperator",
    "ActionType",
    "TriggerEvent",
    "COMMISSION_TABLE",
    "create_commission_rules",
]
