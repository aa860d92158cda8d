"""
Appointment Bot Tests

Unit tests run against an in-memory SQLite database (aiosqlite) with a
fixed clock, so no PostgreSQL, Redis, Anthropic or Google access is
needed.

Running Tests:
    pytest -v
    pytest tests/unit/test_orchestrator.py -v
"""
