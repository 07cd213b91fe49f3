"""
Shared Kernel Module
====================

Generic infrastructure used by every bounded context: logging, HTTP
middleware, metrics export.

DO NOT add escalation business logic to the shared kernel.
"""
