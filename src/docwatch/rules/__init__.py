"""Change rules: typed conditions/actions, the engine and the queueing facade."""

from docwatch.rules.engine import RulesEngine, condition_matches, render_template
from docwatch.rules.integration import EXAMPLE_RULES, RulesIntegration
from docwatch.rules.schema import (
    Action,
    ChangeRule,
    Condition,
    RuleExecutionResult,
    parse_action,
    parse_condition,
)

__all__ = [
    "Action",
    "ChangeRule",
    "Condition",
    "EXAMPLE_RULES",
    "RuleExecutionResult",
    "RulesEngine",
    "RulesIntegration",
    "condition_matches",
    "parse_action",
    "parse_condition",
    "render_template",
]
