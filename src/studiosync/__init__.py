"""studiosync: local-first durable state for a generation studio client."""

__version__ = "0.1.0"
