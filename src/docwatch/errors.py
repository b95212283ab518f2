"""Error types surfaced by docwatch.

The command layer renders these to users:
- NotTrackedError: "not tracked"
- InvalidRuleError: "invalid rule" with the validation reason
- RuleNotFoundError: unknown rule id
- TemporarilyUnavailableError: transient fetch/store failure
"""

from __future__ import annotations


class DocwatchError(Exception):
    """Base class for docwatch errors."""


class NotTrackedError(DocwatchError):
    """The document token is not being tracked."""

    def __init__(self, doc_token: str) -> None:
        super().__init__(f"Document {doc_token} is not tracked")
        self.doc_token = doc_token


class InvalidRuleError(DocwatchError):
    """Rule input failed validation."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid rule: {reason}")
        self.reason = reason


class TemporarilyUnavailableError(DocwatchError):
    """A backing store or remote source is temporarily unavailable."""


class ScopeNotBoundError(DocwatchError):
    """A user-scoped operation ran before a user scope was bound."""


class TransientFetchError(DocwatchError):
    """A fetch failed in a way that is worth retrying."""


class RuleNotFoundError(DocwatchError):
    """No rule with the given id exists for the bound user."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Rule {rule_id} not found")
        self.rule_id = rule_id
