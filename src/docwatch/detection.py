"""Change detection with debouncing.

Compares freshly fetched document metadata against the tracked state and
classifies the difference. Everything here is a pure function of its inputs
and the injected clock.

Classification order:
1. No baseline (never polled successfully) -> ``new_document``
2. Modifier changed -> ``user_changed``. This wins over the timestamp: a
   poll where both the modifier and the modification time moved reports
   ``user_changed``, never ``time_updated``
3. Modification time moved forward -> ``time_updated``
4. Modification time moved backward with the same modifier -> no change
   (clock skew on the host)
5. Otherwise -> no change

A detected change whose previous notification is younger than the debounce
window is reported with ``debounced=True``. Callers keep bookkeeping but
must not emit side effects for it.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from docwatch.clock import Clock, SystemClock
from docwatch.logging import get_logger
from docwatch.models import (
    ChangeDetectionResult,
    ChangeType,
    DocMetadata,
    TrackedDocument,
)

log = get_logger("detection")

DEFAULT_DEBOUNCE_WINDOW_MS = 5000

_system_clock = SystemClock()


def detect_change(
    current: DocMetadata,
    previous: TrackedDocument | None,
    *,
    debounce_window_ms: int = DEFAULT_DEBOUNCE_WINDOW_MS,
    enable_logging: bool = True,
    clock: Clock | None = None,
) -> ChangeDetectionResult:
    """Classify the change between ``current`` metadata and ``previous`` state.

    Args:
        current: Metadata fetched in this poll.
        previous: Tracked state, or None when nothing is known yet.
        debounce_window_ms: Minimum time since the last notification before
            a new change may trigger side effects.
        enable_logging: Emit a debug line per decision.
        clock: Time source (defaults to the system clock).

    Returns:
        A fresh ChangeDetectionResult.
    """
    clock = clock or _system_clock
    now_ms = clock.now_ms()
    changed_at = clock.now()

    prev_time = previous.last_known_modified_time if previous is not None else None
    if previous is None or prev_time is None:
        if enable_logging:
            log.debug("New document tracking started: %s", current.doc_token)
        return ChangeDetectionResult(
            has_changed=True,
            change_type=ChangeType.NEW_DOCUMENT,
            debounced=False,
            current_user=current.last_modified_user,
            current_time=current.last_modified_time,
            changed_at=changed_at,
            reason="First time tracking document",
        )

    prev_user = previous.last_known_user

    def unchanged(reason: str) -> ChangeDetectionResult:
        if enable_logging:
            log.debug("No change for %s: %s", current.doc_token, reason)
        return ChangeDetectionResult(
            has_changed=False,
            change_type=ChangeType.NONE,
            debounced=False,
            current_user=current.last_modified_user,
            current_time=current.last_modified_time,
            changed_at=changed_at,
            reason=reason,
            previous_user=prev_user,
            previous_time=prev_time,
        )

    if current.last_modified_user != prev_user:
        change_type = ChangeType.USER_CHANGED
        reason = f"Different user detected ({prev_user} -> {current.last_modified_user})"
    elif current.last_modified_time > prev_time:
        change_type = ChangeType.TIME_UPDATED
        reason = f"Document updated by {current.last_modified_user}"
    elif current.last_modified_time < prev_time:
        return unchanged(
            f"Modified time moved backward ({prev_time} -> {current.last_modified_time}), ignoring"
        )
    else:
        return unchanged("No metadata change (same user, same time)")

    elapsed = now_ms - previous.last_notification_time
    debounced = elapsed < debounce_window_ms
    if debounced:
        reason = f"Debounced: change within {debounce_window_ms}ms of last notification ({elapsed}ms)"

    if enable_logging:
        log.debug(
            "%s for %s: %s",
            "Change debounced" if debounced else "Change detected",
            current.doc_token,
            reason,
        )

    return ChangeDetectionResult(
        has_changed=True,
        change_type=change_type,
        debounced=debounced,
        current_user=current.last_modified_user,
        current_time=current.last_modified_time,
        changed_at=changed_at,
        reason=reason,
        previous_user=prev_user,
        previous_time=prev_time,
    )


def should_notify_again(
    last_notification_time: int,
    min_interval_ms: int = DEFAULT_DEBOUNCE_WINDOW_MS,
    *,
    clock: Clock | None = None,
) -> bool:
    """Return True when at least ``min_interval_ms`` passed since the last notification."""
    clock = clock or _system_clock
    return clock.now_ms() - last_notification_time >= min_interval_ms


def get_time_since_last_notification(
    last_notification_time: int,
    *,
    clock: Clock | None = None,
) -> int:
    """Seconds (rounded) since the last notification."""
    clock = clock or _system_clock
    return round((clock.now_ms() - last_notification_time) / 1000)


def create_updated_tracked_state(
    doc_token: str,
    doc_type: str,
    notify_target: str,
    metadata: DocMetadata,
    *,
    clock: Clock | None = None,
) -> TrackedDocument:
    """Build the next tracked state after a confirmed change.

    This is the only place the notification time is consumed: the returned
    state records ``now`` as the last notification time.
    """
    clock = clock or _system_clock
    return TrackedDocument(
        doc_token=doc_token,
        doc_type=doc_type,
        notify_target=notify_target,
        last_known_user=metadata.last_modified_user,
        last_known_modified_time=metadata.last_modified_time,
        last_notification_time=clock.now_ms(),
    )


def format_detection_result(result: ChangeDetectionResult) -> str:
    """One-line status for logs, e.g. ``DETECTED (Document updated by u1)``."""
    if result.has_changed:
        status = "DEBOUNCED" if result.debounced else "DETECTED"
    else:
        status = "NO CHANGE"
    details = f" ({result.reason})" if result.reason else ""
    return f"{status}{details}"


@dataclass
class ChangePatternAnalysis:
    """Aggregate view over a series of detection results."""

    total_changes: int = 0
    total_debounced: int = 0
    unique_users: set[str] = field(default_factory=set)
    average_change_interval_ms: int = 0


def analyze_change_pattern(results: Sequence[ChangeDetectionResult]) -> ChangePatternAnalysis:
    """Summarize detection results for debugging or analytics.

    ``unique_users`` only counts modifiers whose change was notified.
    """
    analysis = ChangePatternAnalysis(total_changes=len(results))

    for result in results:
        if result.has_changed and not result.debounced:
            analysis.unique_users.add(result.current_user)
        if result.debounced:
            analysis.total_debounced += 1

    if len(results) > 1:
        intervals = [
            (results[i].changed_at - results[i - 1].changed_at).total_seconds() * 1000
            for i in range(1, len(results))
        ]
        analysis.average_change_interval_ms = round(sum(intervals) / len(intervals))

    return analysis
