"""Rules engine: rule CRUD and condition/action evaluation.

All rule operations are scoped to a bound user id; the engine refuses to
touch the store before ``set_user_id`` has been called.

Evaluation isolates rules from each other: a condition or action that
raises only marks its own RuleExecutionResult with ``error``.
"""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from docwatch.clock import Clock, SystemClock
from docwatch.errors import RuleNotFoundError, ScopeNotBoundError
from docwatch.logging import get_logger
from docwatch.models import ChangeEvent
from docwatch.rules.schema import (
    Action,
    AggregateAction,
    AnyCondition,
    ChangeRule,
    ChangeTypeCondition,
    Condition,
    ContentMatchCondition,
    CreateTaskAction,
    ModifiedByUserCondition,
    NotifyAction,
    RuleExecutionResult,
    TimeRangeCondition,
    WebhookAction,
    parse_action,
    parse_condition,
)
from docwatch.sinks import (
    AggregationBuffer,
    LoggingNotifySink,
    LoggingTaskSink,
    NotifySink,
    TaskSink,
    WebhookSink,
)
from docwatch.store import CHANGE_RULES, Record, Store, scoped

log = get_logger("rules")

# Keys available to action templates as {{key}}
_TEMPLATE_VAR = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# Metadata keys the poller attaches to change events
DIFF_TEXT_KEY = "diff_text"
DIFF_SUMMARY_KEY = "diff_summary"
TITLE_KEY = "title"


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Substitute ``{{key}}`` placeholders; unknown keys are left as is."""

    def substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        return str(context[key]) if key in context else match.group(0)

    return _TEMPLATE_VAR.sub(substitute, template)


def _template_context(change: ChangeEvent, rule: ChangeRule) -> dict[str, Any]:
    title = change.metadata.get(TITLE_KEY) or change.doc_token
    return {
        "doc_token": change.doc_token,
        "docToken": change.doc_token,
        "doc_title": title,
        "docTitle": title,
        "user": change.new_modified_user,
        "change_type": str(change.change_type),
        "rule": rule.name,
        "diff_summary": change.metadata.get(DIFF_SUMMARY_KEY, ""),
    }


def condition_matches(condition: Condition, change: ChangeEvent) -> bool:
    """Pure predicate: does ``condition`` hold for ``change``?"""
    if isinstance(condition, AnyCondition):
        return True
    if isinstance(condition, ModifiedByUserCondition):
        return change.new_modified_user in condition.users
    if isinstance(condition, ChangeTypeCondition):
        return str(change.change_type) in condition.change_types
    if isinstance(condition, TimeRangeCondition):
        return condition.contains(condition.local_hour(change.change_detected_at))
    if isinstance(condition, ContentMatchCondition):
        text = change.metadata.get(DIFF_TEXT_KEY)
        if not text:
            return False
        if condition.case_insensitive:
            text = text.lower()
            return any(p.lower() in text for p in condition.patterns)
        return any(p in text for p in condition.patterns)
    raise ValueError(f"Unknown condition type: {getattr(condition, 'type', condition)!r}")


def webhook_payload(rule: ChangeRule, change: ChangeEvent, timestamp: str) -> dict[str, Any]:
    return {
        "rule": rule.name,
        "doc_token": change.doc_token,
        "change": {
            "type": str(change.change_type),
            "new_modified_user": change.new_modified_user,
            "new_modified_time": change.new_modified_time,
        },
        "timestamp": timestamp,
    }


class RulesEngine:
    """CRUD over change rules plus evaluation against change events."""

    def __init__(
        self,
        store: Store,
        *,
        notify_sink: NotifySink | None = None,
        webhook_sink: WebhookSink | None = None,
        task_sink: TaskSink | None = None,
        aggregation: AggregationBuffer | None = None,
        clock: Clock | None = None,
        user_id: str | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._notify_sink = notify_sink or LoggingNotifySink()
        self._webhook_sink = webhook_sink
        self._task_sink = task_sink or LoggingTaskSink()
        self._aggregation = aggregation or AggregationBuffer(self._notify_sink, self._clock)
        self._user_id = user_id

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def aggregation(self) -> AggregationBuffer:
        return self._aggregation

    def set_user_id(self, user_id: str) -> None:
        self._user_id = user_id
        log.info("Rules engine scope bound to user %s", user_id)

    def _require_user(self) -> str:
        if self._user_id is None:
            raise ScopeNotBoundError("User scope not bound; call set_user_id() first")
        return self._user_id

    def _rules(self) -> list[Record]:
        return scoped(self._store.load(CHANGE_RULES), self._require_user())

    def _update_record(self, rule_id: str, apply: Callable[[Record], Record]) -> Record | None:
        user_id = self._require_user()
        updated: Record | None = None

        def modifier(records: list[Record]) -> list[Record]:
            nonlocal updated
            for index, record in enumerate(records):
                if record["id"] == rule_id and record.get("user_id", "") == user_id:
                    records[index] = updated = apply(record)
                    break
            return records

        self._store.atomic_update(CHANGE_RULES, modifier)
        return updated

    # -- CRUD --------------------------------------------------------------

    def create_rule(
        self,
        doc_token: str,
        name: str,
        condition: Condition | dict[str, Any],
        action: Action | dict[str, Any],
        description: str | None = None,
    ) -> ChangeRule:
        """Validate and store a new enabled rule.

        Raises:
            InvalidRuleError: unknown condition/action type or missing target
        """
        user_id = self._require_user()
        now = self._clock.now()
        rule = ChangeRule(
            id=uuid.uuid4().hex,
            user_id=user_id,
            doc_token=doc_token,
            name=name,
            description=description,
            condition=parse_condition(condition),
            action=parse_action(action),
            enabled=True,
            created_at=now,
            updated_at=now,
        )

        def modifier(records: list[Record]) -> list[Record]:
            records.append(rule.model_dump(mode="json"))
            return records

        self._store.atomic_update(CHANGE_RULES, modifier)
        log.info("Created rule %r for %s", name, doc_token)
        return rule

    def get_rule(self, rule_id: str) -> ChangeRule | None:
        for record in self._rules():
            if record["id"] == rule_id:
                return ChangeRule.model_validate(record)
        return None

    def get_rules_for_doc(self, doc_token: str, enabled_only: bool = True) -> list[ChangeRule]:
        rules = [
            ChangeRule.model_validate(r)
            for r in self._rules()
            if r["doc_token"] == doc_token and (r.get("enabled", True) or not enabled_only)
        ]
        log.debug("Retrieved %d rules for %s", len(rules), doc_token)
        return rules

    def get_all_rules(self) -> list[ChangeRule]:
        return [ChangeRule.model_validate(r) for r in self._rules()]

    def update_rule(
        self,
        rule_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        condition: Condition | dict[str, Any] | None = None,
        action: Action | dict[str, Any] | None = None,
        enabled: bool | None = None,
    ) -> ChangeRule:
        """Apply a partial update to a rule.

        Raises:
            InvalidRuleError: the new condition or action is invalid
            RuleNotFoundError: no such rule for the bound user
        """
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if condition is not None:
            changes["condition"] = parse_condition(condition).model_dump(mode="json")
        if action is not None:
            changes["action"] = parse_action(action).model_dump(mode="json")
        if enabled is not None:
            changes["enabled"] = enabled
        changes["updated_at"] = self._clock.now().isoformat()

        record = self._update_record(rule_id, lambda r: {**r, **changes})
        if record is None:
            raise RuleNotFoundError(rule_id)
        log.info("Updated rule %s", rule_id)
        return ChangeRule.model_validate(record)

    def delete_rule(self, rule_id: str) -> bool:
        """Remove a rule. Returns False when it did not exist."""
        user_id = self._require_user()
        removed = False

        def modifier(records: list[Record]) -> list[Record]:
            nonlocal removed
            kept = [r for r in records if not (r["id"] == rule_id and r.get("user_id", "") == user_id)]
            removed = len(kept) != len(records)
            return kept

        self._store.atomic_update(CHANGE_RULES, modifier)
        if removed:
            log.info("Deleted rule %s", rule_id)
        return removed

    def get_rule_statistics(self) -> dict[str, Any]:
        """Counts of all, enabled and disabled rules, and rules per action type."""
        rules = self.get_all_rules()
        by_action: dict[str, int] = {}
        for rule in rules:
            by_action[rule.action.type] = by_action.get(rule.action.type, 0) + 1
        enabled = sum(1 for r in rules if r.enabled)
        return {
            "total_rules": len(rules),
            "enabled_rules": enabled,
            "disabled_rules": len(rules) - enabled,
            "rules_by_action": by_action,
            "total_executions": sum(r.execution_count for r in rules),
        }

    # -- evaluation --------------------------------------------------------

    async def evaluate_change_against_rules(
        self, change: ChangeEvent | Mapping[str, Any]
    ) -> list[RuleExecutionResult]:
        """Evaluate every enabled rule of the change's document.

        Returns one result per enabled rule. Never raises: a malformed change
        or an unreadable rule store yields an empty list.
        """
        start = time.perf_counter()

        if isinstance(change, Mapping):
            try:
                change = ChangeEvent.from_dict(dict(change))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Ignoring malformed change event: %s", e)
                return []

        doc_token = getattr(change, "doc_token", None)
        if not isinstance(doc_token, str) or not doc_token:
            log.warning("Ignoring change event without a document token")
            return []

        try:
            rules = self.get_rules_for_doc(doc_token)
        except Exception as e:
            log.error("Failed to load rules for %s: %s", doc_token, e)
            return []

        if not rules:
            return []

        change_id = str(getattr(change, "id", "") or "")
        log.debug("Evaluating %d rules for change %s", len(rules), change_id)

        results = [await self._evaluate_rule(rule, change, change_id) for rule in rules]

        log.info(
            "Evaluated %d rules for %s in %.0fms, %d actions executed",
            len(rules),
            doc_token,
            (time.perf_counter() - start) * 1000,
            sum(1 for r in results if r.action_executed),
        )
        return results

    async def _evaluate_rule(
        self, rule: ChangeRule, change: ChangeEvent, change_id: str
    ) -> RuleExecutionResult:
        rule_start = time.perf_counter()
        matched = False

        def result(**kwargs: Any) -> RuleExecutionResult:
            return RuleExecutionResult(
                rule_id=rule.id,
                rule_name=rule.name,
                doc_token=rule.doc_token,
                change_id=change_id,
                condition_matched=matched,
                executed_at=self._clock.now(),
                execution_time_ms=round((time.perf_counter() - rule_start) * 1000, 3),
                **kwargs,
            )

        try:
            matched = condition_matches(rule.condition, change)
            if not matched:
                return result(action_executed=False)
            log.debug("Rule %r matched change %s", rule.name, change_id)
            action_result = await self._execute_action(rule, change)
        except Exception as e:
            log.error("Rule %s (%s) failed: %s", rule.id, rule.name, e)
            return result(action_executed=False, error=str(e) or type(e).__name__)

        self._record_execution(rule.id)
        return result(action_executed=True, action_result=action_result)

    async def _execute_action(self, rule: ChangeRule, change: ChangeEvent) -> dict[str, Any]:
        action = rule.action
        context = _template_context(change, rule)

        if isinstance(action, NotifyAction):
            if not action.target:
                raise ValueError(f"Notify action of rule {rule.id} has no target")
            default = (
                f"Document {change.doc_token} was modified by "
                f"{change.new_modified_user} ({change.change_type})"
            )
            message = render_template(action.template, context) if action.template else default
            message_id = await self._notify_sink.notify(action.target, message)
            return {"type": "notify", "target": action.target, "message": message, "message_id": message_id}

        if isinstance(action, WebhookAction):
            if not action.target:
                raise ValueError(f"Webhook action of rule {rule.id} has no target")
            if self._webhook_sink is None:
                raise RuntimeError("No webhook sink configured")
            payload = webhook_payload(rule, change, self._clock.now().isoformat())
            status = await self._webhook_sink.post(action.target, payload)
            return {"type": "webhook", "url": action.target, "status": status}

        if isinstance(action, CreateTaskAction):
            title = (
                render_template(action.template, context)
                if action.template
                else f"Action needed: {rule.name}"
            )
            description = f"Triggered by change in document {change.doc_token}"
            task_id = await self._task_sink.create_task(title, description, action.target)
            return {"type": "create_task", "title": title, "description": description, "task_id": task_id}

        if isinstance(action, AggregateAction):
            target = action.target or change.metadata.get("notify_target") or ""
            pending = self._aggregation.add(target, change, rule.name)
            return {"type": "aggregate", "target": target, "queued": True, "pending": pending}

        raise ValueError(f"Unknown action type: {getattr(action, 'type', action)!r}")

    def _record_execution(self, rule_id: str) -> None:
        now = self._clock.now().isoformat()
        try:
            self._update_record(
                rule_id,
                lambda r: {
                    **r,
                    "execution_count": r.get("execution_count", 0) + 1,
                    "last_executed_at": now,
                },
            )
        except Exception as e:
            log.warning("Failed to update execution stats for rule %s: %s", rule_id, e)

    def health_check(self) -> bool:
        try:
            return self._store.ping()
        except Exception as e:
            log.error("Rules store health check failed: %s", e)
            return False
