"""Core infrastructure: settings, logging, database."""
