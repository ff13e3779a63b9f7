"""
Shared utilities for lambda-mirror: structured logging, configuration and
the PostgreSQL client used by the postgres transport backend.
"""
