# osiris/core/tasks.py
"""
Task queue handlers.

A handler that returns marks the task completed; one that raises makes it
retry with backoff. Domain errors (missing job/lead, bad payload) will not
get better on retry, so they are logged and swallowed here.
"""
from __future__ import annotations

from osiris.core.errors import NotFoundError, ValidationError
from osiris.infra.logging_config import get_logger
from osiris.infra.pg_task_queue_async import Task

logger = get_logger(__name__)


def _permanent_failure(task: Task, exc: Exception) -> None:
    logger.warning(
        f"Task {task.id[:8]} ({task.task_type}) dropped: {exc}",
        extra={"job_id": task.payload.get("jobId"), "lead_id": task.payload.get("leadId")},
    )


async def handle_job_broadcast(task: Task) -> None:
    from osiris.core.dispatch.broadcast import get_broadcast_service

    payload = task.payload
    try:
        await get_broadcast_service().run_phase(payload["jobId"], payload.get("phase", "initial"))
    except (NotFoundError, ValidationError, KeyError) as exc:
        _permanent_failure(task, exc)


async def handle_lead_followup(task: Task) -> None:
    from osiris.core.automation.lead_followup import get_lead_followup_service

    payload = task.payload
    try:
        await get_lead_followup_service().run(
            payload["leadId"],
            int(payload["stage"]),
            payload["action"],
            lead_phone=payload.get("leadPhone"),
            lead_name=payload.get("leadName"),
        )
    except (NotFoundError, ValidationError, KeyError) as exc:
        _permanent_failure(task, exc)


async def handle_send_reminder(task: Task) -> None:
    from osiris.core.automation.reminders import get_reminder_service

    payload = task.payload
    try:
        await get_reminder_service().send(
            payload["jobId"],
            payload.get("type", "day_before"),
            customer_phone=payload.get("customerPhone"),
            customer_name=payload.get("customerName"),
            eta=payload.get("eta"),
            team_lead_name=payload.get("teamLeadName"),
        )
    except (NotFoundError, ValidationError, KeyError) as exc:
        _permanent_failure(task, exc)


async def handle_send_review_request(task: Task) -> None:
    from osiris.core.automation.reminders import get_reminder_service

    try:
        await get_reminder_service().send_review_request(task.payload["jobId"])
    except (NotFoundError, KeyError) as exc:
        _permanent_failure(task, exc)


TASK_HANDLERS = {
    "job_broadcast": handle_job_broadcast,
    "lead_followup": handle_lead_followup,
    "send_reminder": handle_send_reminder,
    "send_review_request": handle_send_review_request,
}
