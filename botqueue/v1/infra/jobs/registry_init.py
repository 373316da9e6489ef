"""
Handler tables for each queue.

Every queue dispatches through its own closed, frozen table; a job type that
is not listed here is rejected by the dispatcher.
"""

from botqueue.config.logging import get_logger
from botqueue.v1.core.registries import (
    FollowUpOperations,
    JobRegistry,
    ReportOperations,
)
from botqueue.v1.infra.jobs.handlers import (
    REPORT_TYPES,
    GenerateCustomReportHandler,
    GenerateReportHandler,
    ProcessPendingFollowUpsHandler,
    SendFollowUpHandler,
)
from botqueue.v1.infra.jobs.queues import DEFERRED_TASK_QUEUE, SCHEDULED_REPORT_QUEUE

logger = get_logger(__name__)

SEND_FOLLOW_UP = "send_follow_up"
PROCESS_PENDING_FOLLOW_UPS = "process_pending_follow_ups"
GENERATE_CUSTOM_REPORT = "generate_custom_report"


def report_job_type(report_type: str) -> str:
    return f"generate_{report_type}_report"


def build_follow_up_handlers(follow_ups: FollowUpOperations) -> JobRegistry:
    """Handler table for the deferred-task queue."""
    registry = JobRegistry(DEFERRED_TASK_QUEUE)
    registry.register(SEND_FOLLOW_UP, SendFollowUpHandler(follow_ups))
    registry.register(
        PROCESS_PENDING_FOLLOW_UPS, ProcessPendingFollowUpsHandler(follow_ups)
    )
    registry.freeze()

    logger.info(
        "Job handlers registered",
        queue=DEFERRED_TASK_QUEUE,
        registered_handlers=registry.list(),
    )
    return registry


def build_report_handlers(reports: ReportOperations) -> JobRegistry:
    """Handler table for the scheduled-report queue."""
    registry = JobRegistry(SCHEDULED_REPORT_QUEUE)
    for report_type in REPORT_TYPES:
        registry.register(
            report_job_type(report_type), GenerateReportHandler(reports, report_type)
        )
    registry.register(GENERATE_CUSTOM_REPORT, GenerateCustomReportHandler(reports))
    registry.freeze()

    logger.info(
        "Job handlers registered",
        queue=SCHEDULED_REPORT_QUEUE,
        registered_handlers=registry.list(),
    )
    return registry
