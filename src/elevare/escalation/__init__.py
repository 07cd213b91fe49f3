"""
Escalation Module
=================

Bounded context that watches operational entities across domains and
raises escalation events when configurable rules match.

Responsibilities:
- Store escalation rules (CRUD, soft disable)
- Match rules against entity snapshots (SLA breach, stale status,
  unassigned high priority, overdue, custom predicates)
- Deduplicate: at most one open event per (rule, entity)
- Periodic sweeps with per-domain isolation and bounded concurrency
- Emit events, dispatch notifications, accept acknowledgments
- Keep a queryable ledger of sweeps and their failures
"""

__version__ = "1.0.0"
