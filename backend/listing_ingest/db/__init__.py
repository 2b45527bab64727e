"""Database engine, sessions and helpers."""
