"""
Escalation Interfaces Layer
===========================

Interface adapters (controllers) for the escalation module.

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from elevare.escalation.interfaces.controllers import router as escalation_router

__all__ = ["escalation_router"]
