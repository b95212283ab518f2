"""docwatch: polling-based document change tracking with snapshots, diffs and rules."""

__version__ = "0.1.0"

# Public API
from docwatch.clock import Clock, ManualClock, SystemClock
from docwatch.config import Config, get_config, load_config
from docwatch.detection import (
    create_updated_tracked_state,
    detect_change,
    should_notify_again,
)
from docwatch.diff import DiffResult, compute_diff, format_diff_for_card
from docwatch.errors import (
    DocwatchError,
    InvalidRuleError,
    NotTrackedError,
    RuleNotFoundError,
    TemporarilyUnavailableError,
)
from docwatch.models import (
    ChangeDetectionResult,
    ChangeEvent,
    ChangeType,
    DocMetadata,
    DocumentSnapshot,
    TrackedDocument,
)
from docwatch.persistence import DocumentPersistence
from docwatch.poller import DocPoller, TrackedDocumentRegistry
from docwatch.rules.engine import RulesEngine
from docwatch.rules.integration import EXAMPLE_RULES, RulesIntegration
from docwatch.rules.schema import ChangeRule, RuleExecutionResult
from docwatch.service import DocWatchService
from docwatch.snapshots import DocSnapshotService

__all__ = [
    # Main entry points
    "DocWatchService",
    "DocPoller",
    "TrackedDocumentRegistry",
    # Detection
    "detect_change",
    "should_notify_again",
    "create_updated_tracked_state",
    # Snapshots and diffs
    "DocSnapshotService",
    "DiffResult",
    "compute_diff",
    "format_diff_for_card",
    # Rules
    "RulesEngine",
    "RulesIntegration",
    "EXAMPLE_RULES",
    "ChangeRule",
    "RuleExecutionResult",
    # Persistence
    "DocumentPersistence",
    # Data model
    "ChangeDetectionResult",
    "ChangeEvent",
    "ChangeType",
    "DocMetadata",
    "DocumentSnapshot",
    "TrackedDocument",
    # Clock
    "Clock",
    "ManualClock",
    "SystemClock",
    # Config
    "Config",
    "load_config",
    "get_config",
    # Errors
    "DocwatchError",
    "InvalidRuleError",
    "NotTrackedError",
    "RuleNotFoundError",
    "TemporarilyUnavailableError",
]
