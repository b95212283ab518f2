"""Rule records: closed condition and action variants.

Conditions and actions are pydantic models discriminated on ``type``, so an
unknown kind or a missing required field is rejected when the rule is built
rather than when it is evaluated.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from docwatch.errors import InvalidRuleError

ChangeTypeName = Literal["new_document", "time_updated", "user_changed"]


class RuleModel(BaseModel):
    """Base for rule payloads; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


# -- conditions ---------------------------------------------------------------


class AnyCondition(RuleModel):
    """Matches every change."""

    type: Literal["any"] = "any"


class ModifiedByUserCondition(RuleModel):
    """Matches when the new modifier is one of ``value``."""

    type: Literal["modified_by_user"] = "modified_by_user"
    value: str | list[str]

    @field_validator("value")
    @classmethod
    def _not_empty(cls, v: str | list[str]) -> str | list[str]:
        if not v:
            raise ValueError("modified_by_user requires at least one user id")
        return v

    @property
    def users(self) -> list[str]:
        return [self.value] if isinstance(self.value, str) else list(self.value)


class ChangeTypeCondition(RuleModel):
    """Matches when the change type is one of ``value``."""

    type: Literal["change_type"] = "change_type"
    value: ChangeTypeName | list[ChangeTypeName]

    @field_validator("value")
    @classmethod
    def _not_empty(cls, v: Any) -> Any:
        if not v:
            raise ValueError("change_type requires at least one change type")
        return v

    @property
    def change_types(self) -> list[str]:
        return [self.value] if isinstance(self.value, str) else list(self.value)


class TimeRangeCondition(RuleModel):
    """Matches when the local hour of the change falls in the window.

    ``value`` is either a ``"start-end"`` window of hours (inclusive, and
    wrapping past midnight when start > end, e.g. ``"22-6"``), a single
    hour, or a list of hours. ``timezone`` is an IANA name; without it the
    host's local time is used.
    """

    type: Literal["time_range"] = "time_range"
    value: str | list[int]
    timezone: str | None = None

    @field_validator("value")
    @classmethod
    def _valid_hours(cls, v: str | list[int]) -> str | list[int]:
        if isinstance(v, str):
            start, sep, end = v.partition("-")
            parts = [start, end] if sep else [start]
            if not all(p.strip().isdigit() for p in parts):
                raise ValueError(f"time_range window must look like '9-17', got {v!r}")
            hours = [int(p) for p in parts]
        else:
            hours = v
        if not hours:
            raise ValueError("time_range requires at least one hour")
        for hour in hours:
            if not 0 <= hour <= 23:
                raise ValueError(f"hour {hour} outside 0-23")
        return v

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                ZoneInfo(v)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"unknown timezone {v!r}") from e
        return v

    def contains(self, hour: int) -> bool:
        if isinstance(self.value, list):
            return hour in self.value
        start, sep, end = self.value.partition("-")
        if not sep:
            return hour == int(start)
        lo, hi = int(start), int(end)
        if lo <= hi:
            return lo <= hour <= hi
        return hour >= lo or hour <= hi

    def local_hour(self, moment: datetime) -> int:
        if self.timezone:
            return moment.astimezone(ZoneInfo(self.timezone)).hour
        return moment.astimezone().hour


class ContentMatchCondition(RuleModel):
    """Matches when any pattern occurs in the changed text of the diff."""

    type: Literal["content_match"] = "content_match"
    value: str | list[str]
    case_insensitive: bool = False

    @field_validator("value")
    @classmethod
    def _not_empty(cls, v: str | list[str]) -> str | list[str]:
        if not v:
            raise ValueError("content_match requires at least one pattern")
        return v

    @property
    def patterns(self) -> list[str]:
        return [self.value] if isinstance(self.value, str) else list(self.value)


Condition = Annotated[
    Union[
        AnyCondition,
        ModifiedByUserCondition,
        ChangeTypeCondition,
        TimeRangeCondition,
        ContentMatchCondition,
    ],
    Field(discriminator="type"),
]


# -- actions ------------------------------------------------------------------


class NotifyAction(RuleModel):
    """Send a message to a chat/channel."""

    type: Literal["notify"] = "notify"
    target: str | None = None
    template: str | None = None

    @model_validator(mode="after")
    def _requires_target(self) -> NotifyAction:
        if not self.target:
            raise ValueError("notify action requires target")
        return self


class WebhookAction(RuleModel):
    """POST the change payload to a URL."""

    type: Literal["webhook"] = "webhook"
    target: str | None = None
    template: str | None = None

    @model_validator(mode="after")
    def _requires_target(self) -> WebhookAction:
        if not self.target:
            raise ValueError("webhook action requires target")
        return self


class CreateTaskAction(RuleModel):
    """Create a task through the task sink; ``template`` is the title."""

    type: Literal["create_task"] = "create_task"
    target: str | None = None
    template: str | None = None


class AggregateAction(RuleModel):
    """Buffer the change for a batched summary sent to ``target``."""

    type: Literal["aggregate"] = "aggregate"
    target: str | None = None
    template: str | None = None


Action = Annotated[
    Union[NotifyAction, WebhookAction, CreateTaskAction, AggregateAction],
    Field(discriminator="type"),
]


# -- records ------------------------------------------------------------------


class ChangeRule(BaseModel):
    """A stored rule, owned by one user and bound to one document."""

    id: str
    user_id: str = ""
    doc_token: str
    name: str
    description: str | None = None
    condition: Condition
    action: Action
    enabled: bool = True
    created_at: datetime
    updated_at: datetime
    execution_count: int = 0
    last_executed_at: datetime | None = None


class RuleExecutionResult(BaseModel):
    """Outcome of evaluating one rule against one change event."""

    rule_id: str
    rule_name: str = ""
    doc_token: str = ""
    change_id: str = ""
    condition_matched: bool
    action_executed: bool
    action_result: dict[str, Any] | None = None
    error: str | None = None
    executed_at: datetime
    execution_time_ms: float = 0.0


_condition_adapter: TypeAdapter[Any] = TypeAdapter(Condition)
_action_adapter: TypeAdapter[Any] = TypeAdapter(Action)


def _reason(error: ValidationError) -> str:
    first = error.errors()[0]
    message = first["msg"].removeprefix("Value error, ")
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {message}" if location else message


def parse_condition(data: Condition | dict[str, Any]) -> Condition:
    """Validate a condition payload, raising InvalidRuleError on failure."""
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return _condition_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidRuleError(f"condition {_reason(e)}") from e


def parse_action(data: Action | dict[str, Any]) -> Action:
    """Validate an action payload, raising InvalidRuleError on failure."""
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return _action_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidRuleError(f"action {_reason(e)}") from e
