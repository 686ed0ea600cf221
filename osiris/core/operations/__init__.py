# osiris/core/operations/__init__.py
"""
Operator-facing operations behind the dashboard API.

- ``pricing``: tier lookup, quotes and add-on matching
- ``reporting``: daily/team metrics, leaderboard, earnings summaries
- ``rain_day``: weather rescheduling of exterior jobs
- ``payments``: Stripe checkout events and the public tip flow
- ``hcp_sync``: Housecall Pro webhook mirroring
- ``records``: job and lead listing/creation for the dashboard
"""
