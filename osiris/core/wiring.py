# osiris/core/wiring.py
"""
Adapter bundle handed to the services.

Every slot is resolved lazily from the infra/transport singletons on first
use, so production code builds services with no arguments while tests pass
in-memory fakes for exactly the ports they exercise.
"""
from __future__ import annotations

from typing import Any

from osiris.core.ports import (
    AuditRepository,
    CustomerRepository,
    EarningsRepository,
    JobRepository,
    LeadRepository,
    OfferRepository,
    PricingRepository,
    SmsSender,
    TaskQueue,
    TeamMessenger,
    TeamRepository,
    TipCheckout,
    VoiceCaller,
)


def _default_jobs():
    from osiris.infra.pg_job_repo_async import get_job_repo
    return get_job_repo()


def _default_customers():
    from osiris.infra.pg_job_repo_async import get_customer_repo
    return get_customer_repo()


def _default_offers():
    from osiris.infra.pg_job_repo_async import get_offer_repo
    return get_offer_repo()


def _default_leads():
    from osiris.infra.pg_lead_repo_async import get_lead_repo
    return get_lead_repo()


def _default_teams():
    from osiris.infra.pg_team_repo_async import get_team_repo
    return get_team_repo()


def _default_earnings():
    from osiris.infra.pg_team_repo_async import get_earnings_repo
    return get_earnings_repo()


def _default_audit():
    from osiris.infra.pg_audit_repo_async import get_audit_repo
    return get_audit_repo()


def _default_pricing():
    from osiris.infra.pg_pricing_repo_async import get_pricing_repo
    return get_pricing_repo()


def _default_queue():
    from osiris.infra.pg_task_queue_async import get_task_queue
    return get_task_queue()


def _default_messenger():
    from osiris.transport.telegram_sender import get_team_messenger
    return get_team_messenger()


def _default_sms():
    from osiris.transport.openphone_sender import get_sms_sender
    return get_sms_sender()


def _default_caller():
    from osiris.transport.vapi_client import get_voice_caller
    return get_voice_caller()


def _default_checkout():
    from osiris.transport.stripe_client import get_tip_checkout
    return get_tip_checkout()


_DEFAULTS = {
    "jobs": _default_jobs,
    "customers": _default_customers,
    "offers": _default_offers,
    "leads": _default_leads,
    "teams": _default_teams,
    "earnings": _default_earnings,
    "audit": _default_audit,
    "pricing": _default_pricing,
    "queue": _default_queue,
    "messenger": _default_messenger,
    "sms": _default_sms,
    "caller": _default_caller,
    "checkout": _default_checkout,
}


class ServicePorts:
    """Lazily resolved repositories and senders."""

    jobs: JobRepository
    customers: CustomerRepository
    offers: OfferRepository
    leads: LeadRepository
    teams: TeamRepository
    earnings: EarningsRepository
    audit: AuditRepository
    pricing: PricingRepository
    queue: TaskQueue
    messenger: TeamMessenger
    sms: SmsSender
    caller: VoiceCaller
    checkout: TipCheckout

    def __init__(self, **overrides: Any) -> None:
        unknown = set(overrides) - set(_DEFAULTS)
        if unknown:
            raise TypeError(f"Unknown ports: {', '.join(sorted(unknown))}")
        self._resolved: dict[str, Any] = dict(overrides)

    def __getattr__(self, name: str) -> Any:
        # Only called when normal lookup fails, i.e. for port slots
        factory = _DEFAULTS.get(name)
        if factory is None:
            raise AttributeError(name)
        resolved = self.__dict__["_resolved"]
        if name not in resolved:
            resolved[name] = factory()
        return resolved[name]
