"""Durable SQLite storage for task runs."""
