# tests/test_payments.py
"""Tests for Stripe payment events and the public tip checkout."""
from __future__ import annotations

import pytest

from osiris.core.domain import LeadStatus, PaymentStatus
from osiris.core.errors import NotFoundError, ValidationError
from osiris.core.operations.payments import PaymentService

from tests.conftest import make_job, make_lead, make_team


def _checkout(job_id, payment_type, amount_total=5000, **metadata):
    return {
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_test_1",
            "amount_total": amount_total,
            "currency": "usd",
            "metadata": {"job_id": job_id, "payment_type": payment_type, **metadata},
        }},
    }


@pytest.fixture
def service(ports):
    return PaymentService(ports)


@pytest.fixture
def job(fakes):
    job = make_job(lead_id="lead-1")
    fakes.jobs.jobs[job.id] = job
    fakes.leads.leads["lead-1"] = make_lead()
    return job


class TestDeposit:
    @pytest.mark.asyncio
    async def test_books_lead_and_starts_broadcast(self, service, fakes, job):
        result = await service.handle_event(_checkout(job.id, "DEPOSIT"))

        assert result == {"received": True}
        updated = fakes.jobs.jobs[job.id]
        assert updated.payment_status == PaymentStatus.DEPOSIT_PAID.value
        assert updated.confirmed_at is not None
        lead = fakes.leads.leads["lead-1"]
        assert lead.status == LeadStatus.BOOKED.value
        assert lead.converted_to_job_id == job.id
        assert fakes.queue.of_type("job_broadcast")[0]["payload"] == {"jobId": job.id, "phase": "initial"}
        event = fakes.audit.events[-1]
        assert event["type"] == "DEPOSIT_PAID"
        assert event["metadata"]["cleaner_assignment_triggered"] is True

    @pytest.mark.asyncio
    async def test_assigned_job_is_not_rebroadcast(self, service, fakes):
        fakes.jobs.jobs["job-1"] = make_job(assigned_team_lead="member-1")

        await service.handle_event(_checkout("job-1", "deposit"))

        assert fakes.queue.enqueued == []
        assert fakes.audit.events[-1]["metadata"]["cleaner_assignment_triggered"] is False

    @pytest.mark.asyncio
    async def test_redelivered_session_applied_once(self, service, fakes, job):
        event = _checkout(job.id, "DEPOSIT")

        await service.handle_event(event)
        await service.handle_event(event)

        assert fakes.jobs.jobs[job.id].deposit_session_id == "cs_test_1"
        assert len(fakes.queue.of_type("job_broadcast")) == 1
        assert fakes.audit.event_types().count("DEPOSIT_PAID") == 1


class TestFinalAndTip:
    @pytest.mark.asyncio
    async def test_final_marks_paid(self, service, fakes, job):
        await service.handle_event(_checkout(job.id, "FINAL"))

        assert fakes.jobs.jobs[job.id].paid is True
        assert fakes.jobs.jobs[job.id].payment_status == PaymentStatus.FULLY_PAID.value
        assert fakes.audit.event_types() == ["FINAL_PAID"]

    @pytest.mark.asyncio
    async def test_tip_credits_team(self, service, fakes):
        fakes.jobs.jobs["job-1"] = make_job(team_id="team-1", assigned_team_lead="member-1")

        await service.handle_event(_checkout("job-1", "TIP", amount_total=2550))

        tip = fakes.earnings.tips[0]
        assert tip.amount == 25.5
        assert tip.team_id == "team-1"
        assert tip.member_id == "member-1"
        assert tip.reported_via == "stripe"
        assert tip.stripe_session_id == "cs_test_1"

    @pytest.mark.asyncio
    async def test_redelivered_tip_recorded_once(self, service, fakes):
        fakes.jobs.jobs["job-1"] = make_job(team_id="team-1", assigned_team_lead="member-1")
        event = _checkout("job-1", "TIP", amount_total=2000)

        await service.handle_event(event)
        await service.handle_event(event)

        assert len(fakes.earnings.tips) == 1
        assert fakes.audit.event_types() == ["TIP_PAID"]


class TestIgnoredEvents:
    @pytest.mark.asyncio
    async def test_missing_job_id(self, service, fakes):
        result = await service.handle_event({"type": "checkout.session.completed", "data": {"object": {}}})

        assert result == {"received": True}
        assert fakes.audit.events == []

    @pytest.mark.asyncio
    async def test_unknown_job(self, service, fakes):
        await service.handle_event(_checkout("ghost", "DEPOSIT"))

        assert fakes.audit.events == []

    @pytest.mark.asyncio
    async def test_unhandled_type(self, service, fakes):
        assert await service.handle_event({"type": "customer.created"}) == {"received": True}

    @pytest.mark.asyncio
    async def test_payment_intent_is_logged(self, service, fakes):
        event = {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "amount": 18000, "metadata": {"job_id": "job-1", "payment_type": "final"}}},
        }

        await service.handle_event(event)

        assert fakes.audit.events[0]["type"] == "FINAL_PAID"
        assert fakes.audit.events[0]["metadata"]["amount"] == 180.0


class TestTipFlow:
    @pytest.mark.asyncio
    async def test_job_info(self, service, fakes):
        fakes.jobs.jobs["job-1"] = make_job(team_id="team-1")
        fakes.teams.teams["team-1"] = make_team()

        info = await service.tip_job_info("job-1")

        assert info["customer_first_name"] == "Jane"
        assert info["team_name"] == "Team Alpha"
        assert info["date"] == "Thursday, March 12"
        assert "customer_phone" not in info

    @pytest.mark.asyncio
    async def test_job_info_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.tip_job_info("nope")

    @pytest.mark.asyncio
    async def test_checkout(self, service, fakes, job):
        session = await service.create_tip_checkout(job.id, 20.005)

        assert session["session_id"] == "cs_test_1"
        assert fakes.checkout.sessions == [(job.id, 20.0)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 1000.01])
    async def test_checkout_amount_bounds(self, service, fakes, job, amount):
        with pytest.raises(ValidationError):
            await service.create_tip_checkout(job.id, amount)
        assert fakes.checkout.sessions == []

    @pytest.mark.asyncio
    async def test_checkout_unknown_job(self, service):
        with pytest.raises(NotFoundError):
            await service.create_tip_checkout("nope", 10)
