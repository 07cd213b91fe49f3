"""
Elevare Escalation Engine
=========================

Background escalation service for the Elevare property and legal
operations console.

Modules:
- Escalation: rule store, condition matchers, deduplication, periodic
  evaluator, event emitter and notification dispatch

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services, DTOs and collaborator interfaces
- Domain: Entities, matchers and value objects
- Infrastructure: Database, snapshot providers, Slack, scheduler
"""

__version__ = "1.0.0"
