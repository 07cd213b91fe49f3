"""
Infrastructure Module
=====================

Cross-cutting technical infrastructure (database engine and sessions).
"""
