"""Shared SQLite storage: SQLModel tables, session helpers and Alembic migrations."""
