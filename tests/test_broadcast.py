# tests/test_broadcast.py
"""Tests for the job broadcast state machine (offer, claim, pass, escalate)."""
from __future__ import annotations

from unittest.mock import patch

import pytest

from osiris.core.dispatch import messages
from osiris.core.dispatch.broadcast import (
    ESCALATION_NOTE,
    REASON_ALL_PASSED,
    REASON_NO_LEADS,
    REASON_UNDELIVERED,
    JobBroadcastService,
)
from osiris.core.domain import JobStatus, MemberRole, OfferResponse
from osiris.core.errors import ConflictError, NotFoundError, ValidationError

from tests.conftest import make_job, make_member


@pytest.fixture
def two_leads(fakes):
    alice = make_member(id="m-alice", name="Alice", telegram_id="1001")
    bob = make_member(id="m-bob", name="Bob", telegram_id="1002", team_id="team-2")
    for member in (alice, bob):
        fakes.teams.members[member.id] = member
    return alice, bob


@pytest.fixture
def job(fakes):
    job = make_job()
    fakes.jobs.jobs[job.id] = job
    return job


@pytest.fixture
def service(ports):
    return JobBroadcastService(ports)


# ============================================================================
# start()
# ============================================================================

class TestStart:
    @pytest.mark.asyncio
    async def test_enqueues_initial_phase(self, service, fakes, job):
        task_id = await service.start(job.id)

        assert task_id == "task-1"
        assert fakes.queue.enqueued == [
            {"type": "job_broadcast", "payload": {"jobId": job.id, "phase": "initial"}, "delay": 0},
        ]

    @pytest.mark.asyncio
    async def test_unknown_job(self, service):
        with pytest.raises(NotFoundError):
            await service.start("missing")


# ============================================================================
# run_phase()
# ============================================================================

class TestInitialPhase:
    @pytest.mark.asyncio
    async def test_offers_to_every_available_lead(self, service, fakes, job, two_leads):
        result = await service.run_phase(job.id, "initial")

        assert result == {"success": True, "phase": "initial", "sentTo": 2, "failed": 0}
        assert {m["chat_id"] for m in fakes.messenger.sent} == {"1001", "1002"}
        first = fakes.messenger.sent[0]
        assert "NEW JOB AVAILABLE" in first["text"]
        assert first["buttons"] == messages.offer_buttons(job.id)
        assert set(fakes.offers.responses(job.id).values()) == {OfferResponse.PENDING.value}

    @pytest.mark.asyncio
    async def test_schedules_urgent_and_escalate(self, service, fakes, job, two_leads):
        await service.run_phase(job.id, "initial")

        phases = [(t["payload"]["phase"], t["delay"]) for t in fakes.queue.of_type("job_broadcast")]
        assert phases == [("urgent", 900), ("escalate", 1800)]

    @pytest.mark.asyncio
    @patch("osiris.core.dispatch.broadcast.settings")
    async def test_auto_escalation_disabled(self, mock_settings, service, fakes, job, two_leads):
        mock_settings.broadcast_auto_escalation = False

        await service.run_phase(job.id, "initial")

        assert fakes.queue.enqueued == []

    @pytest.mark.asyncio
    async def test_skips_technicians_and_unavailable_leads(self, service, fakes, job):
        fakes.teams.members.update({
            "tech": make_member(id="tech", telegram_id="2001", role=MemberRole.TECHNICIAN.value),
            "busy": make_member(id="busy", telegram_id="2002", available=False),
            "no-tg": make_member(id="no-tg", telegram_id=None),
            "lead": make_member(id="lead", telegram_id="2003"),
        })

        result = await service.run_phase(job.id, "initial")

        assert result["sentTo"] == 1
        assert [m["chat_id"] for m in fakes.messenger.sent] == ["2003"]

    @pytest.mark.asyncio
    async def test_no_leads_escalates_immediately(self, service, fakes, job):
        result = await service.run_phase(job.id, "initial")

        assert result == {"escalated": True, "reason": "No available team leads"}
        assert len(fakes.messenger.control) == 1
        assert REASON_NO_LEADS in fakes.messenger.control[0]
        assert fakes.audit.exceptions[0].type == "callback"
        assert fakes.audit.exceptions[0].job_id == job.id
        assert fakes.queue.enqueued == []

    @pytest.mark.asyncio
    async def test_partial_delivery_counts_failures(self, service, fakes, job, two_leads):
        fakes.messenger.failing_chats.add("1002")

        result = await service.run_phase(job.id, "initial")

        assert result["sentTo"] == 1
        assert result["failed"] == 1
        assert fakes.messenger.control == []
        assert list(fakes.offers.responses(job.id)) == ["m-alice"]

    @pytest.mark.asyncio
    async def test_nothing_delivered_escalates(self, service, fakes, job, two_leads):
        fakes.messenger.failing_chats.update({"1001", "1002"})

        result = await service.run_phase(job.id, "initial")

        assert result["escalated"] is True
        assert result["reason"] == REASON_UNDELIVERED
        assert len(fakes.audit.exceptions) == 1

    @pytest.mark.asyncio
    async def test_retry_after_enqueue_failure_does_not_reoffer(self, service, fakes, job, two_leads):
        original_enqueue = fakes.queue.enqueue
        calls = {"n": 0}

        async def flaky_enqueue(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("database went away")
            return await original_enqueue(*args, **kwargs)

        fakes.queue.enqueue = flaky_enqueue
        with pytest.raises(ConnectionError):
            await service.run_phase(job.id, "initial")

        result = await service.run_phase(job.id, "initial")

        assert result == {"success": True, "phase": "initial", "sentTo": 2, "failed": 0}
        assert len(fakes.messenger.sent) == 2
        assert len(fakes.offers.offers) == 2
        assert fakes.messenger.control == []
        assert [t["payload"]["phase"] for t in fakes.queue.of_type("job_broadcast")] == ["urgent", "escalate"]

    @pytest.mark.asyncio
    async def test_records_successful_automation_run(self, service, fakes, job, two_leads):
        await service.run_phase(job.id, "initial", source="qstash")

        log = fakes.audit.automation_logs[-1]
        assert log["type"] == "job_broadcast"
        assert log["source"] == "qstash"
        assert log["status"] == "success"


class TestPhaseGuards:
    @pytest.mark.asyncio
    async def test_invalid_phase(self, service, job):
        with pytest.raises(ValidationError):
            await service.run_phase(job.id, "panic")

    @pytest.mark.asyncio
    async def test_missing_job_logs_failure(self, service, fakes):
        with pytest.raises(NotFoundError):
            await service.run_phase("missing", "initial")

        assert fakes.audit.automation_logs[-1]["status"] == "failed"
        assert fakes.audit.automation_logs[-1]["error"] == "Job not found"

    @pytest.mark.asyncio
    async def test_assigned_job_is_skipped(self, service, fakes, job, two_leads):
        fakes.jobs.jobs[job.id] = make_job(assigned_team_lead="m-alice")

        result = await service.run_phase(job.id, "urgent")

        assert result == {"skipped": True, "reason": "Job already assigned", "assignedTo": "m-alice"}
        assert fakes.messenger.sent == []

    @pytest.mark.asyncio
    async def test_cancelled_job_is_skipped(self, service, fakes, job, two_leads):
        fakes.jobs.jobs[job.id] = make_job(status=JobStatus.CANCELLED.value)

        result = await service.run_phase(job.id, "escalate")

        assert result["skipped"] is True
        assert fakes.messenger.control == []


class TestUrgentAndEscalate:
    @pytest.mark.asyncio
    async def test_urgent_skips_leads_who_passed(self, service, fakes, job, two_leads):
        await service.run_phase(job.id, "initial")
        alice, bob = two_leads
        await service.decline(job.id, bob)
        fakes.messenger.sent.clear()

        result = await service.run_phase(job.id, "urgent")

        assert result["sentTo"] == 1
        assert [m["chat_id"] for m in fakes.messenger.sent] == ["1001"]
        assert "URGENT" in fakes.messenger.sent[0]["text"]

    @pytest.mark.asyncio
    async def test_escalate_hands_job_to_operator(self, service, fakes, job, two_leads):
        await service.run_phase(job.id, "initial")

        result = await service.run_phase(job.id, "escalate")

        assert result == {"success": True, "phase": "escalate"}
        assert len(fakes.messenger.control) == 1
        assert fakes.jobs.jobs[job.id].notes.endswith(ESCALATION_NOTE)
        assert len(fakes.audit.exceptions) == 1
        assert set(fakes.offers.responses(job.id).values()) == {OfferResponse.WITHDRAWN.value}
        assert len(fakes.messenger.edits) == 2

    @pytest.mark.asyncio
    async def test_escalation_without_control_chat_still_records_exception(self, fakes, job):
        fakes.messenger.control_configured = False
        service = JobBroadcastService(fakes.ports())

        await service.run_phase(job.id, "escalate")

        assert fakes.messenger.control == []
        assert len(fakes.audit.exceptions) == 1


# ============================================================================
# claim() / decline()
# ============================================================================

class TestClaim:
    @pytest.mark.asyncio
    async def test_first_claim_wins(self, service, fakes, job, two_leads):
        alice, bob = two_leads
        await service.run_phase(job.id, "initial")

        claimed = await service.claim(job.id, alice)

        assert claimed.assigned_team_lead == "m-alice"
        assert claimed.team_id == "team-1"
        assert fakes.offers.responses(job.id) == {
            "m-alice": OfferResponse.ACCEPTED.value,
            "m-bob": OfferResponse.WITHDRAWN.value,
        }
        edited = {e["chat_id"]: e["text"] for e in fakes.messenger.edits}
        assert "JOB CLAIMED" in edited["1001"]
        assert "claimed by Alice" in edited["1002"]
        assert "JOB_CLAIMED" in fakes.audit.event_types()

    @pytest.mark.asyncio
    async def test_second_claim_conflicts(self, service, fakes, job, two_leads):
        alice, bob = two_leads
        await service.run_phase(job.id, "initial")
        await service.claim(job.id, alice)

        with pytest.raises(ConflictError):
            await service.claim(job.id, bob)

        assert fakes.jobs.jobs[job.id].assigned_team_lead == "m-alice"

    @pytest.mark.asyncio
    async def test_customer_gets_cleaner_assigned_sms(self, service, fakes, job, two_leads):
        alice, _ = two_leads

        await service.claim(job.id, alice)

        assert len(fakes.sms.sent) == 1
        to, text = fakes.sms.sent[0]
        assert to == job.customer_phone
        assert "Alice will be your cleaner" in text

    @pytest.mark.asyncio
    async def test_sms_failure_does_not_undo_claim(self, service, fakes, job, two_leads):
        alice, _ = two_leads
        fakes.sms.fail = True

        claimed = await service.claim(job.id, alice)

        assert claimed.assigned_team_lead == "m-alice"

    @pytest.mark.asyncio
    async def test_claim_without_offer_sends_confirmation(self, service, fakes, job, two_leads):
        alice, _ = two_leads

        await service.claim(job.id, alice)

        assert any("JOB CLAIMED" in text for text in fakes.messenger.sent_to("1001"))

    @pytest.mark.asyncio
    async def test_technician_cannot_claim(self, service, job):
        tech = make_member(id="tech", role=MemberRole.TECHNICIAN.value)

        with pytest.raises(ValidationError):
            await service.claim(job.id, tech)

    @pytest.mark.asyncio
    async def test_completed_job_cannot_be_claimed(self, service, fakes, job, two_leads):
        fakes.jobs.jobs[job.id] = make_job(status=JobStatus.COMPLETED.value)

        with pytest.raises(ConflictError):
            await service.claim(job.id, two_leads[0])


class TestDecline:
    @pytest.mark.asyncio
    async def test_pass_marks_offer(self, service, fakes, job, two_leads):
        alice, bob = two_leads
        await service.run_phase(job.id, "initial")

        result = await service.decline(job.id, alice)

        assert result == {"passed": True, "escalated": False}
        assert fakes.offers.responses(job.id)["m-alice"] == OfferResponse.PASSED.value

    @pytest.mark.asyncio
    async def test_everyone_passed_escalates(self, service, fakes, job, two_leads):
        alice, bob = two_leads
        await service.run_phase(job.id, "initial")
        await service.decline(job.id, alice)

        result = await service.decline(job.id, bob)

        assert result["escalated"] is True
        assert REASON_ALL_PASSED in fakes.messenger.control[0]
        assert len(fakes.audit.exceptions) == 1

    @pytest.mark.asyncio
    async def test_queued_escalate_skipped_after_everyone_passed(self, service, fakes, job, two_leads):
        alice, bob = two_leads
        await service.run_phase(job.id, "initial")
        await service.decline(job.id, alice)
        await service.decline(job.id, bob)

        urgent = await service.run_phase(job.id, "urgent")
        escalate = await service.run_phase(job.id, "escalate")

        assert urgent == escalate == {"skipped": True, "reason": "Job already escalated"}
        assert len(fakes.audit.exceptions) == 1
        assert len(fakes.messenger.control) == 1
        assert ESCALATION_NOTE not in (fakes.jobs.jobs[job.id].notes or "")

    @pytest.mark.asyncio
    async def test_restart_clears_escalation(self, service, fakes, job, two_leads):
        alice, bob = two_leads
        await service.run_phase(job.id, "initial")
        await service.decline(job.id, alice)
        await service.decline(job.id, bob)
        assert fakes.jobs.jobs[job.id].escalated_at is not None

        await service.start(job.id)

        assert fakes.jobs.jobs[job.id].escalated_at is None
        result = await service.run_phase(job.id, "escalate")
        assert result == {"success": True, "phase": "escalate"}
        assert len(fakes.audit.exceptions) == 2

    @pytest.mark.asyncio
    async def test_unknown_job(self, service, two_leads):
        with pytest.raises(NotFoundError):
            await service.decline("missing", two_leads[0])
