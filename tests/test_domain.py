# tests/test_domain.py
"""Tests for domain models and the small core helpers"""
from datetime import date, datetime, timezone

import pytest

from osiris.core.domain import Lead, LeadStatus
from osiris.core.phone import normalize_phone
from osiris.core.schedule import format_date, format_time, is_business_hours, next_business_opening
from osiris.infra.logging_config import mask_phone

from tests.conftest import make_job


class TestJob:
    def test_short_ref(self):
        assert make_job(job_number=1042).short_ref == "#1042"

    @pytest.mark.parametrize("service_type,job_type,exterior", [
        ("window_cleaning", "Windows", True),
        ("standard", "Gutter Cleaning", True),
        ("pressure_washing", "", True),
        ("deep", "Deep Clean", False),
        ("standard", "Standard Clean", False),
    ])
    def test_is_exterior(self, service_type, job_type, exterior):
        assert make_job(service_type=service_type, job_type=job_type).is_exterior is exterior

    def test_to_dict_serializes_dates(self):
        data = make_job(completed_at=datetime(2026, 3, 12, 20, 0, tzinfo=timezone.utc)).to_dict()
        assert data["date"] == "2026-03-12"
        assert data["completed_at"].startswith("2026-03-12T20:00:00")


class TestLead:
    @pytest.mark.parametrize("status,terminal", [
        (LeadStatus.NEW, False),
        (LeadStatus.CONTACTED, False),
        (LeadStatus.QUALIFIED, False),
        (LeadStatus.BOOKED, True),
        (LeadStatus.SCHEDULED, True),
        (LeadStatus.COMPLETED, True),
        (LeadStatus.LOST, True),
    ])
    def test_is_terminal(self, status, terminal):
        assert Lead(id="l", name="Bob", phone="+15125550122", status=status.value).is_terminal is terminal


class TestPhone:
    @pytest.mark.parametrize("raw,expected", [
        ("(512) 555-0123", "+15125550123"),
        ("1-512-555-0123", "+15125550123"),
        ("+44 20 7946 0958", "+442079460958"),
        ("555-0123", None),
        ("", None),
        (None, None),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_mask(self):
        assert mask_phone("+15125550123") == "+151****23"
        assert mask_phone("12") == "****"


class TestSchedule:
    def test_business_hours(self):
        # Tuesday 11:00 Central
        assert is_business_hours(datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)) is True
        # Monday 22:00 Central
        assert is_business_hours(datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)) is False
        # Sunday noon Central
        assert is_business_hours(datetime(2026, 3, 8, 17, 0, tzinfo=timezone.utc)) is False

    def test_next_opening_after_hours(self):
        opening = next_business_opening(datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc))
        assert opening.isoformat() == "2026-03-10T08:00:00-05:00"

    def test_next_opening_skips_sunday(self):
        # Saturday 20:00 Central
        opening = next_business_opening(datetime(2026, 3, 15, 1, 0, tzinfo=timezone.utc))
        assert opening.date() == date(2026, 3, 16)
        assert opening.hour == 8

    def test_next_opening_inside_hours_is_now(self):
        now = datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)
        assert next_business_opening(now) == now

    def test_formatting(self):
        assert format_date(date(2026, 3, 12)) == "Thursday, March 12"
        assert format_time("14:30") == "2:30 PM"
        assert format_time("10:00") == "10:00 AM"
        assert format_time(None) == "TBD"
        assert format_time("morning") == "morning"
