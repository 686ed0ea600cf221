# osiris/core/automation/__init__.py
"""
Customer- and lead-facing automations.

- ``lead_followup``: staged text/call sequence for new leads
- ``reminders``: day-before, on-my-way and review-request SMS
- ``reengagement``: monthly "time for another clean" offers
- ``daily``: the once-a-day cron runner (reminders, briefings, re-engagement)

Each step is idempotent against its own bookkeeping columns
(``followup_stage``, ``*_sent_at``), so QStash or task-queue retries are safe.
"""
