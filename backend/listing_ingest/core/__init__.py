"""Core primitives: exceptions and logging."""
