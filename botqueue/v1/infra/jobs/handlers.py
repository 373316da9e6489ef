"""
Job handlers for the deferred-task and scheduled-report queues.

Handlers implement the JobHandler protocol. They validate the payload,
delegate to the external follow-up or report operations, and let every
error propagate so the dispatcher can report the failed attempt.
"""

from typing import Any

from botqueue.config.logging import get_logger
from botqueue.v1.core.exceptions import ValidationError
from botqueue.v1.core.registries import FollowUpOperations, ReportOperations

logger = get_logger(__name__)

REPORT_TYPES = ("daily", "weekly", "monthly")


class SendFollowUpHandler:
    """
    Sends a single scheduled follow-up.

    Payload expected:
    {
        "follow_up_id": 42
    }
    """

    def __init__(self, follow_ups: FollowUpOperations):
        self.follow_ups = follow_ups

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        follow_up_id = payload.get("follow_up_id")
        if follow_up_id is None:
            raise ValidationError("follow_up_id is required in payload")

        await self.follow_ups.send_follow_up(follow_up_id)
        return {"success": True, "follow_up_id": follow_up_id}


class ProcessPendingFollowUpsHandler:
    """Sweeps follow-ups that are due but were never sent."""

    def __init__(self, follow_ups: FollowUpOperations):
        self.follow_ups = follow_ups

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        await self.follow_ups.process_pending_follow_ups()
        return {"success": True}


class GenerateReportHandler:
    """Generates one of the fixed periodic analytics reports."""

    def __init__(self, reports: ReportOperations, report_type: str):
        if report_type not in REPORT_TYPES:
            raise ValueError(f"Invalid report type: {report_type}")
        self.reports = reports
        self.report_type = report_type

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        await self.reports.generate_report({"report_type": self.report_type})
        return {"success": True, "report_type": self.report_type}


class GenerateCustomReportHandler:
    """
    Generates a report from a caller-supplied payload.

    Payload expected:
    {
        "report_type": "weekly",
        "start_date": "2026-01-01",  # optional, forwarded as-is
        "end_date": "2026-01-31"     # optional, forwarded as-is
    }
    """

    def __init__(self, reports: ReportOperations):
        self.reports = reports

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        if not payload.get("report_type"):
            raise ValidationError("report_type is required in payload")

        await self.reports.generate_report(dict(payload))
        return {"success": True, "report_type": payload["report_type"]}
