"""Schema migration drivers for SQLite, PostgreSQL and an in-memory stub."""

__version__ = "0.1.0"
__all__ = ["util", "sqlite", "stub", "postgres"]