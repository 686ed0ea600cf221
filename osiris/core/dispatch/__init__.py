# osiris/core/dispatch/__init__.py
"""
Dispatch layer: getting jobs into the hands of a team.

- ``messages``: Telegram HTML texts and inline keyboards for team leads
- ``broadcast``: the offer / urgent / escalate state machine and claim/decline
- ``team_reports``: tip, upsell and confirmation reports sent by leads in chat

Dispatch code talks to the outside world only through ``osiris.core.ports``.
"""
