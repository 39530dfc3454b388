"""Alembic migration environment bundled with the package."""
