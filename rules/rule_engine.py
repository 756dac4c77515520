"""
Declarative commission rules.

A rule pairs a trigger with a condition tree over a context dict and a list
of actions. When several rules match, the one with the highest priority is
the one whose action parameters apply.

Context fields are addressed with dotted paths ("referrer.role"); enum
values are compared by their string value so rules stay serializable.
"""

import operator
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    CREDIT_COMMISSION = "credit_commission"


class TriggerEvent(str, Enum):
    FIRST_RECHARGE_COMPLETED = "first_recharge_completed"


def _ordered(compare):
    # a missing field never satisfies an ordering comparison
    return lambda actual, expected: actual is not None and compare(actual, expected)


_OPERATORS = {
    ConditionOperator.EQUALS: operator.eq,
    ConditionOperator.NOT_EQUALS: operator.ne,
    ConditionOperator.GREATER_THAN: _ordered(operator.gt),
    ConditionOperator.LESS_THAN: _ordered(operator.lt),
    ConditionOperator.IN: lambda actual, expected: bool(expected) and actual in expected,
    ConditionOperator.NOT_IN: lambda actual, expected: not expected or actual not in expected,
    ConditionOperator.IS_TRUE: lambda actual, _: bool(actual),
    ConditionOperator.IS_FALSE: lambda actual, _: not actual,
}


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set)):
        return [_plain(v) for v in value]
    return value


def _lookup(context: dict, path: str) -> Any:
    value: Any = context
    for key in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        compare = _OPERATORS[self.operator]
        return compare(_plain(_lookup(context, self.field)), _plain(self.value))

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator.value, "value": _plain(self.value)}


@dataclass
class ConditionGroup:
    """All (AND) or any (OR) of the nested conditions. An empty group matches."""

    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        combine = all if self.operator == LogicalOperator.AND else any
        return not self.conditions or combine(c.evaluate(context) for c in self.conditions)

    def to_dict(self) -> dict:
        return {"operator": self.operator.value, "conditions": [c.to_dict() for c in self.conditions]}


def condition_from_dict(data: dict) -> Union[Condition, ConditionGroup]:
    if "conditions" in data:
        return ConditionGroup(
            operator=LogicalOperator(data["operator"]),
            conditions=[condition_from_dict(c) for c in data["conditions"]],
        )
    return Condition(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass
class Action:
    type: ActionType
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        params = {key: str(value) if isinstance(value, Decimal) else value for key, value in self.params.items()}
        return {"type": self.type.value, "params": params}


@dataclass
class Rule:
    id: str
    name: str
    trigger: TriggerEvent
    conditions: Union[Condition, ConditionGroup]
    actions: list[Action]
    description: str = ""
    is_active: bool = True
    priority: int = 0
    created_at: datetime = field(default_factory=datetime.now)

    def evaluate(self, context: dict) -> bool:
        return self.is_active and self.conditions.evaluate(context)

    def param(self, action_type: ActionType, name: str, default: Any = None) -> Any:
        for action in self.actions:
            if action.type == action_type and name in action.params:
                return action.params[name]
        return default

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trigger": self.trigger.value,
            "priority": self.priority,
            "is_active": self.is_active,
            "conditions": self.conditions.to_dict(),
            "actions": [a.to_dict() for a in self.actions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        return cls(
            id=data["id"],
            name=data["name"],
            trigger=TriggerEvent(data["trigger"]),
            conditions=condition_from_dict(data["conditions"]),
            actions=[Action(type=ActionType(a["type"]), params=dict(a.get("params", {}))) for a in data["actions"]],
            description=data.get("description", ""),
            is_active=data.get("is_active", True),
            priority=data.get("priority", 0),
        )


class RuleEngine:
    """Rule registry keyed by id; lookups return rules by descending priority."""

    def __init__(self, rules: Optional[list[Rule]] = None):
        self.rules: dict[str, Rule] = {rule.id: rule for rule in rules or []}

    def add_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def list_rules(self, trigger: Optional[TriggerEvent] = None) -> list[Rule]:
        selected = [r for r in self.rules.values() if trigger is None or r.trigger == trigger]
        return sorted(selected, key=lambda r: r.priority, reverse=True)

    def first_match(self, trigger: TriggerEvent, context: dict) -> Optional[Rule]:
        return next((r for r in self.list_rules(trigger) if r.evaluate(context)), None)

    def action_param(self, trigger: TriggerEvent, context: dict, action_type: ActionType, param: str, default: Any = None) -> Any:
        """Value of ``param`` on the highest-priority matching rule's action."""
        rule = self.first_match(trigger, context)
        return default if rule is None else rule.param(action_type, param, default)


COMMISSION_TABLE = [
    {
        "id": "commission-distributor-premium",
        "name": "Premium distributor commission",
        "trigger": "first_recharge_completed",
        "priority": 20,
        "conditions": {"field": "referrer.role", "operator": "equals", "value": "DISTRIBUTOR_PREMIUM"},
        "actions": [{"type": "credit_commission", "params": {"rate": "0.15"}}],
    },
    {
        "id": "commission-distributor-provider",
        "name": "Distributor and provider commission",
        "trigger": "first_recharge_completed",
        "priority": 10,
        "conditions": {"field": "referrer.role", "operator": "in", "value": ["DISTRIBUTOR", "PROVIDER"]},
        "actions": [{"type": "credit_commission", "params": {"rate": "0.10"}}],
    },
]


def create_commission_rules(table: Optional[list[dict]] = None) -> list[Rule]:
    """
    Referral commission table paid on a referred user's first completed recharge.

    ``table`` takes rules in their dict form (as produced by ``Rule.to_dict``);
    rates are read back as Decimal.
    """
    rules = [Rule.from_dict(data) for data in (COMMISSION_TABLE if table is None else table)]
    for rule in rules:
        for action in rule.actions:
            if "rate" in action.params:
                action.params["rate"] = Decimal(str(action.params["rate"]))
    return rules
