# tests/test_rain_day.py
from __future__ import annotations

from datetime import date

import pytest

from osiris.core.domain import JobStatus, OfferResponse
from osiris.core.errors import ValidationError
from osiris.core.operations.rain_day import RainDayService

from tests.conftest import make_job, make_member

RAIN = date(2026, 3, 12)
DRY = date(2026, 3, 14)


@pytest.fixture
def service(ports):
    return RainDayService(ports)


@pytest.fixture
def jobs(fakes):
    fakes.teams.members["member-1"] = make_member()
    rows = {
        "win": make_job(id="win", job_number=1, service_type="window", job_type="Window Cleaning",
                        assigned_team_lead="member-1", team_id="team-1", total_amount=250.0),
        "gut": make_job(id="gut", job_number=2, job_type="Gutter cleaning", total_amount=120.5),
        "std": make_job(id="std", job_number=3),
        "done": make_job(id="done", job_number=4, job_type="Pressure wash", status=JobStatus.COMPLETED.value),
    }
    fakes.jobs.jobs.update(rows)
    return rows


class TestPreview:
    @pytest.mark.asyncio
    async def test_only_scheduled_exterior_jobs(self, service, jobs):
        result = await service.preview(RAIN)

        assert result["date"] == "2026-03-12"
        assert result["jobs_count"] == 2
        assert result["total_revenue"] == 370.5
        assert {j["id"] for j in result["jobs"]} == {"win", "gut"}

    @pytest.mark.asyncio
    async def test_clear_day(self, service, jobs):
        result = await service.preview(DRY)

        assert result == {"date": "2026-03-14", "jobs_count": 0, "total_revenue": 0, "jobs": []}


class TestReschedule:
    @pytest.mark.asyncio
    async def test_target_must_be_later(self, service, jobs):
        with pytest.raises(ValidationError):
            await service.reschedule(RAIN, RAIN)

    @pytest.mark.asyncio
    async def test_moves_and_rebroadcasts(self, service, fakes, jobs):
        await fakes.offers.record("win", "member-1", "initial", "1001", 10)

        record = await service.reschedule(RAIN, DRY, initiated_by="ops@osiris")

        assert record.jobs_affected == 2
        assert record.jobs_successfully_rescheduled == 2
        assert record.jobs_failed == []
        # Two customer SMS plus one notice to the released team lead
        assert record.notifications_sent == 3
        assert fakes.audit.reschedules == [record]

        moved = fakes.jobs.jobs["win"]
        assert moved.date == DRY
        assert moved.assigned_team_lead is None
        assert moved.team_id is None
        assert moved.status == JobStatus.SCHEDULED.value
        assert "[RAIN DAY] Moved from 2026-03-12 to 2026-03-14" in moved.notes
        assert fakes.offers.responses("win") == {"member-1": OfferResponse.WITHDRAWN.value}
        assert "RAIN DAY" in fakes.messenger.sent_to("1001")[0]

        assert fakes.jobs.jobs["std"].date == RAIN
        broadcasts = {t["payload"]["jobId"] for t in fakes.queue.of_type("job_broadcast")}
        assert broadcasts == {"win", "gut"}
        assert "RAIN_DAY_RESCHEDULE" in fakes.audit.event_types()

    @pytest.mark.asyncio
    async def test_sms_failure_still_moves_job(self, service, fakes, jobs):
        fakes.sms.fail = True

        record = await service.reschedule(RAIN, DRY)

        assert record.jobs_successfully_rescheduled == 2
        assert record.notifications_sent == 1
        assert record.initiated_by == "system"
