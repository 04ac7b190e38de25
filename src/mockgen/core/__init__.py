"""Core configuration, database and time utilities."""
