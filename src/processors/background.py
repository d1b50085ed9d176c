"""
Background task processors.

Payloads follow {taskType?, parameters?}; parameters may also be given at the
top level. A taskType that does not belong to the job is rejected.

- cleanup-data: taskType "cleanup" or "maintenance"
- generate-report: taskType "report-generation"
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from src.queueing.entities import JobResult, utc_now
from src.queueing.errors import ValidationError
from src.queueing.registry import JobContext, JobProcessor
from src.store import StoreAdapter


logger = logging.getLogger(__name__)


CLEANUP_TASK_TYPES = ("cleanup", "maintenance")
REPORT_TASK_TYPES = ("report-generation",)
CLEANUP_TABLES = ("webhooks", "jobs")
DEFAULT_CLEANUP_DAYS = 30
DEFAULT_REPORT_DAYS = 7


def _task_parameters(payload: dict, allowed_task_types: tuple[str, ...]) -> tuple[Optional[str], dict]:
    task_type = payload.get("taskType")
    if task_type is not None and task_type not in allowed_task_types:
        raise ValidationError(
            f"Unknown task type: {task_type}",
            code="UNKNOWN_TASK_TYPE",
            context={"taskType": task_type},
        )
    parameters = payload.get("parameters")
    if parameters is None:
        parameters = {k: v for k, v in payload.items() if k != "taskType"}
    if not isinstance(parameters, dict):
        raise ValidationError("parameters must be an object", code="INVALID_PARAMETERS")
    return task_type, parameters


def _parse_date(value, field_name: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name}: {value!r}",
            code="INVALID_DATE",
            context={field_name: value},
        ) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CleanupDataProcessor(JobProcessor):
    """
    cleanup-data

    Deletes processed Webhook Records and terminal queue jobs older than
    olderThanDays (default 30).
    """

    def __init__(
        self,
        store: StoreAdapter,
        clean_jobs: Optional[Callable[[int], dict]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            store: Store holding the webhook records
            clean_jobs: QueueService.cleanup or compatible (older_than_ms -> stats)
            clock: Returns the current aware UTC datetime
        """
        self.store = store
        self.clean_jobs = clean_jobs
        self.clock = clock

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        task_type, parameters = _task_parameters(payload, CLEANUP_TASK_TYPES)

        days = parameters.get("olderThanDays", DEFAULT_CLEANUP_DAYS)
        if not isinstance(days, int) or isinstance(days, bool) or days < 0:
            raise ValidationError(
                f"olderThanDays must be a non-negative integer, got {days!r}",
                code="INVALID_RETENTION",
            )
        tables = parameters.get("tables") or list(CLEANUP_TABLES)
        unknown = [table for table in tables if table not in CLEANUP_TABLES]
        if unknown:
            raise ValidationError(
                f"Unknown cleanup tables: {', '.join(map(str, unknown))}",
                code="INVALID_TABLES",
                context={"tables": unknown},
            )
        context.report_progress(25)

        result = {"olderThanDays": days, "tables": tables}
        if "webhooks" in tables:
            cutoff = self.clock() - timedelta(days=days)
            result["webhooksDeleted"] = self.store.delete_processed_webhooks(cutoff)
        context.report_progress(75)

        if "jobs" in tables and self.clean_jobs is not None:
            stats = self.clean_jobs(days * 24 * 60 * 60 * 1000)
            result["jobsDeleted"] = stats.get("total", 0)
        context.report_progress(100)

        logger.info(f"Cleanup finished: {result}")
        return JobResult.ok(
            "Background task cleanup completed",
            data={"taskType": task_type or "cleanup", **result},
            started=started,
        )


class GenerateReportProcessor(JobProcessor):
    """generate-report: order count, revenue and top products for a date range."""

    def __init__(self, store: StoreAdapter, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        task_type, parameters = _task_parameters(payload, REPORT_TASK_TYPES)

        end = _parse_date(parameters["endDate"], "endDate") if parameters.get("endDate") else self.clock()
        if parameters.get("startDate"):
            start = _parse_date(parameters["startDate"], "startDate")
        else:
            start = end - timedelta(days=DEFAULT_REPORT_DAYS)
        if start >= end:
            raise ValidationError("startDate must be before endDate", code="INVALID_DATE_RANGE")
        context.report_progress(20)

        report = self.store.order_report(start, end, shop_domain=parameters.get("shopDomain"))
        context.report_progress(80)

        logger.info(f"Report generated: {report['order_count']} orders")
        context.report_progress(100)
        return JobResult.ok(
            "Background task report-generation completed",
            data={"taskType": task_type or "report-generation", "report": report},
            started=started,
        )
