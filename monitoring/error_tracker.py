"""
Error tracking with rule-based categorization, retry policy and thresholds.

Errors are classified by ordered, data-driven rule tables evaluated
top-to-bottom over the error text. Exceptions raised by this package carry
their own category, which takes precedence over the text rules.
"""

import enum
import inspect
import json
import traceback
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field

from core.exceptions import (
    ErrorCategory,
    NonRetryableError,
    RetryableError,
    SyncException,
)
from core.result import capture
from core.timeutils import utcnow
from monitoring.alerting import Alert, AlertDispatcher, AlertSeverity
import logging

logger = logging.getLogger(__name__)


class ErrorSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorDetail(BaseModel):
    """Immutable record of one tracked error; updates produce copies"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"err_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=utcnow)
    category: ErrorCategory
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    stack_trace: Optional[str] = None
    retryable: bool = False
    retry_count: int = 0
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None


class ErrorSummary(BaseModel):
    total_errors: int
    errors_by_category: Dict[str, int]
    errors_by_severity: Dict[str, int]
    resolved_count: int
    unresolved_count: int
    critical_errors: List[ErrorDetail]
    recent_errors: List[ErrorDetail]


@dataclass(frozen=True)
class ErrorThreshold:
    category: ErrorCategory
    severity: ErrorSeverity
    max_count: int
    time_window_minutes: int


# ============================================================================
# Rule tables (evaluated top to bottom, first match wins)
# ============================================================================

@dataclass(frozen=True)
class CategoryRule:
    patterns: Tuple[str, ...]
    category: ErrorCategory


@dataclass(frozen=True)
class SeverityRule:
    patterns: Tuple[str, ...]
    severity: ErrorSeverity
    category: Optional[ErrorCategory] = None  # rule only applies to this category


@dataclass(frozen=True)
class RetryabilityRule:
    patterns: Tuple[str, ...]
    retryable: bool


CATEGORY_RULES: Tuple[CategoryRule, ...] = (
    CategoryRule(("warehouse", "bigquery"), ErrorCategory.WAREHOUSE),
    CategoryRule(("operational store", "supabase", "postgres"), ErrorCategory.STORE),
    CategoryRule(("validation", "invalid", "malformed"), ErrorCategory.VALIDATION),
    CategoryRule(("sync",), ErrorCategory.SYNC),
    CategoryRule(
        ("network", "timeout", "timed out", "etimedout", "econn", "connection", "connect", "socket"),
        ErrorCategory.NETWORK,
    ),
    CategoryRule(("quality", "completeness", "duplicate", "anomal"), ErrorCategory.DATA_QUALITY),
    CategoryRule(("config", "setting", "cycl"), ErrorCategory.CONFIGURATION),
)

DEFAULT_CATEGORY = ErrorCategory.SYNC

SEVERITY_RULES: Tuple[SeverityRule, ...] = (
    SeverityRule(("authentication", "permission denied", "unauthorized"), ErrorSeverity.CRITICAL),
    SeverityRule(("quota exceeded", "rate limit"), ErrorSeverity.HIGH),
    SeverityRule(("corrupt",), ErrorSeverity.HIGH, category=ErrorCategory.DATA_QUALITY),
)

CATEGORY_SEVERITY: Dict[ErrorCategory, ErrorSeverity] = {
    ErrorCategory.CONFIGURATION: ErrorSeverity.CRITICAL,
    ErrorCategory.DATA_QUALITY: ErrorSeverity.MEDIUM,
    ErrorCategory.NETWORK: ErrorSeverity.MEDIUM,
}

RETRYABILITY_RULES: Tuple[RetryabilityRule, ...] = (
    RetryabilityRule(("permission", "authentication", "invalid", "malformed"), False),
    RetryabilityRule(
        (
            "timeout", "timed out", "etimedout", "econnreset", "econnrefused", "network",
            "temporary", "transient", "connection reset", "connection refused",
        ),
        True,
    ),
)

DEFAULT_THRESHOLDS: Tuple[ErrorThreshold, ...] = (
    ErrorThreshold(ErrorCategory.CONFIGURATION, ErrorSeverity.CRITICAL, 1, 60),
    ErrorThreshold(ErrorCategory.WAREHOUSE, ErrorSeverity.CRITICAL, 1, 60),
    ErrorThreshold(ErrorCategory.NETWORK, ErrorSeverity.MEDIUM, 5, 15),
    ErrorThreshold(ErrorCategory.DATA_QUALITY, ErrorSeverity.HIGH, 3, 60),
)

EXPORT_COLUMNS = ["id", "timestamp", "category", "severity", "message", "resolved", "retry_count"]


def error_text(error: BaseException) -> str:
    """Text the rule tables are matched against"""
    if isinstance(error, SyncException):
        text = error.message
        if error.original_exception is not None:
            text += f" {type(error.original_exception).__name__}: {error.original_exception}"
        return text
    return f"{type(error).__name__}: {error}"


def categorize(text: str) -> ErrorCategory:
    lowered = text.lower()
    for rule in CATEGORY_RULES:
        if any(p in lowered for p in rule.patterns):
            return rule.category
    return DEFAULT_CATEGORY


def determine_severity(text: str, category: ErrorCategory) -> ErrorSeverity:
    lowered = text.lower()
    for rule in SEVERITY_RULES:
        if rule.category is not None and rule.category != category:
            continue
        if any(p in lowered for p in rule.patterns):
            return rule.severity
    return CATEGORY_SEVERITY.get(category, ErrorSeverity.MEDIUM)


def is_retryable(text: str) -> bool:
    lowered = text.lower()
    for rule in RETRYABILITY_RULES:
        if any(p in lowered for p in rule.patterns):
            return rule.retryable
    return False


@dataclass(frozen=True)
class RetryOutcome:
    detail: Optional[ErrorDetail]
    success: bool
    result: Any = None
    error: Optional[Exception] = None


async def attempt_retry(detail: ErrorDetail, operation: Callable[[], Awaitable[Any]]) -> RetryOutcome:
    """
    Run one retry attempt of a tracked error.

    Returns a new RetryOutcome; ``detail`` is never modified. A successful
    attempt resolves the error, a failed one rewrites its message with the
    attempt number. No further attempt is scheduled.
    """
    if not detail.retryable:
        return RetryOutcome(
            detail=detail,
            success=False,
            error=NonRetryableError("Error not retryable", context={"error_id": detail.id}),
        )

    attempt = detail.retry_count + 1
    outcome = await capture(operation)
    if outcome.ok:
        return RetryOutcome(
            detail=detail.model_copy(update={
                "retry_count": attempt,
                "resolved": True,
                "resolved_at": utcnow(),
                "resolution": "Retry successful",
            }),
            success=True,
            result=outcome.value,
        )
    return RetryOutcome(
        detail=detail.model_copy(update={
            "retry_count": attempt,
            "message": f"Retry {attempt} failed: {outcome.error}",
        }),
        success=False,
        error=outcome.error,
    )


ErrorHandler = Callable[[ErrorDetail], Any]


class ErrorTracker:
    """
    In-memory store of tracked errors.

    Responsibilities:
    - Classify errors (category, severity, retryability)
    - Notify handlers registered for a message substring or a category
    - Fire at most one threshold alert per check pass
    - Summaries, export and retention cleanup
    """

    def __init__(
        self,
        thresholds: Optional[List[ErrorThreshold]] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        max_errors: int = 5000
    ):
        self._errors: "OrderedDict[str, ErrorDetail]" = OrderedDict()
        self._handlers: Dict[str, ErrorHandler] = {}
        self.thresholds: List[ErrorThreshold] = list(DEFAULT_THRESHOLDS if thresholds is None else thresholds)
        self.dispatcher = dispatcher
        self.max_errors = max_errors

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def track_error(
        self,
        message: str,
        category: ErrorCategory = DEFAULT_CATEGORY,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        stack_trace: Optional[str] = None,
        retryable: bool = False
    ) -> ErrorDetail:
        detail = ErrorDetail(
            category=category,
            severity=severity,
            message=message,
            context=context or {},
            stack_trace=stack_trace,
            retryable=retryable,
        )
        self._store(detail)
        logger.error(f"Tracked {detail.severity.value} {detail.category.value} error {detail.id}: {message}")

        await self.check_thresholds()
        await self._run_handlers(detail)
        return detail

    async def track_auto_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorDetail:
        """Track an exception, deriving category, severity and retryability"""
        text = error_text(error)
        if isinstance(error, SyncException):
            category = error.category
        else:
            category = categorize(text)

        if isinstance(error, RetryableError):
            retryable = True
        elif isinstance(error, NonRetryableError):
            retryable = False
        else:
            retryable = is_retryable(text)

        merged_context = dict(context or {})
        if isinstance(error, SyncException):
            merged_context.setdefault("error", error.to_dict())

        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__)) \
            if error.__traceback__ is not None else None

        return await self.track_error(
            message=getattr(error, "message", None) or str(error) or type(error).__name__,
            category=category,
            severity=determine_severity(text, category),
            context=merged_context,
            stack_trace=stack,
            retryable=retryable,
        )

    def _store(self, detail: ErrorDetail):
        self._errors[detail.id] = detail
        while len(self._errors) > self.max_errors:
            self._errors.popitem(last=False)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def register_handler(self, pattern: str, handler: ErrorHandler):
        """Call handler for errors whose message contains pattern or whose category equals it"""
        self._handlers[pattern] = handler

    def unregister_handler(self, pattern: str):
        self._handlers.pop(pattern, None)

    async def _run_handlers(self, detail: ErrorDetail):
        for pattern, handler in list(self._handlers.items()):
            if pattern in detail.message or pattern == detail.category.value:
                try:
                    result = handler(detail)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Error handler for '{pattern}' failed: {e}")

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    async def check_thresholds(self, now: Optional[datetime] = None) -> Optional[Alert]:
        """
        Count unresolved errors per threshold within its window.

        The first threshold reached fires one alert and ends the pass.
        """
        now = now or utcnow()
        for threshold in self.thresholds:
            window_start = now - timedelta(minutes=threshold.time_window_minutes)
            matching = self.get_errors(
                category=threshold.category,
                severity=threshold.severity,
                since=window_start,
                resolved=False,
            )
            if len(matching) >= threshold.max_count:
                alert = Alert(
                    type="error_threshold",
                    severity=AlertSeverity.CRITICAL if threshold.severity == ErrorSeverity.CRITICAL else AlertSeverity.WARNING,
                    message=(
                        f"{len(matching)} unresolved {threshold.category.value} errors "
                        f"({threshold.severity.value}) in the last {threshold.time_window_minutes} minutes"
                    ),
                    metadata={
                        "category": threshold.category.value,
                        "severity": threshold.severity.value,
                        "count": len(matching),
                        "max_count": threshold.max_count,
                    },
                )
                if self.dispatcher is not None:
                    await self.dispatcher.dispatch(alert)
                return alert
        return None

    # ------------------------------------------------------------------
    # Queries & resolution
    # ------------------------------------------------------------------

    def get_error(self, error_id: str) -> Optional[ErrorDetail]:
        return self._errors.get(error_id)

    def get_errors(
        self,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        since: Optional[datetime] = None,
        resolved: Optional[bool] = None
    ) -> List[ErrorDetail]:
        errors = list(self._errors.values())
        if category is not None:
            errors = [e for e in errors if e.category == category]
        if severity is not None:
            errors = [e for e in errors if e.severity == severity]
        if since is not None:
            errors = [e for e in errors if e.timestamp >= since]
        if resolved is not None:
            errors = [e for e in errors if e.resolved == resolved]
        return errors

    def resolve_error(self, error_id: str, resolution: Optional[str] = None) -> Optional[ErrorDetail]:
        detail = self._errors.get(error_id)
        if detail is None or detail.resolved:
            return detail
        updated = detail.model_copy(update={
            "resolved": True,
            "resolved_at": utcnow(),
            "resolution": resolution,
        })
        self._errors[error_id] = updated
        return updated

    async def retry_error(self, error_id: str, operation: Callable[[], Awaitable[Any]]) -> RetryOutcome:
        detail = self._errors.get(error_id)
        if detail is None:
            return RetryOutcome(
                detail=None,
                success=False,
                error=NonRetryableError("Unknown error id", context={"error_id": error_id}),
            )
        outcome = await attempt_retry(detail, operation)
        self._errors[error_id] = outcome.detail
        if outcome.success:
            logger.info(f"Retry of {error_id} succeeded after {outcome.detail.retry_count} attempt(s)")
        else:
            logger.warning(f"Retry of {error_id} failed: {outcome.error}")
        return outcome

    # ------------------------------------------------------------------
    # Summary, export, cleanup
    # ------------------------------------------------------------------

    def get_error_summary(self, recent_limit: int = 10, now: Optional[datetime] = None) -> ErrorSummary:
        now = now or utcnow()
        errors = list(self._errors.values())
        by_category = {c.value: 0 for c in ErrorCategory}
        by_severity = {s.value: 0 for s in ErrorSeverity}
        for e in errors:
            by_category[e.category.value] += 1
            by_severity[e.severity.value] += 1

        hour_ago = now - timedelta(hours=1)
        recent = sorted(
            (e for e in errors if e.timestamp >= hour_ago),
            key=lambda e: e.timestamp,
            reverse=True,
        )[:recent_limit]

        resolved_count = sum(1 for e in errors if e.resolved)
        return ErrorSummary(
            total_errors=len(errors),
            errors_by_category=by_category,
            errors_by_severity=by_severity,
            resolved_count=resolved_count,
            unresolved_count=len(errors) - resolved_count,
            critical_errors=[e for e in errors if e.severity == ErrorSeverity.CRITICAL and not e.resolved],
            recent_errors=recent,
        )

    def cleanup_old_errors(self, days_to_keep: int = 7, now: Optional[datetime] = None) -> int:
        """Drop resolved errors resolved more than days_to_keep ago"""
        cutoff = (now or utcnow()) - timedelta(days=days_to_keep)
        stale = [
            error_id for error_id, e in self._errors.items()
            if e.resolved and e.resolved_at is not None and e.resolved_at < cutoff
        ]
        for error_id in stale:
            del self._errors[error_id]
        if stale:
            logger.info(f"Removed {len(stale)} resolved errors older than {days_to_keep} days")
        return len(stale)

    def export_errors(self, format: str = "json") -> str:
        errors = list(self._errors.values())
        if format == "json":
            return json.dumps([e.model_dump(mode="json") for e in errors], indent=2)
        if format == "csv":
            frame = pd.DataFrame(
                [e.model_dump(mode="json", include=set(EXPORT_COLUMNS)) for e in errors],
                columns=EXPORT_COLUMNS,
            )
            return frame.to_csv(index=False)
        raise ValueError(f"Unsupported export format: {format}")
