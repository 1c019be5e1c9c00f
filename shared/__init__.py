"""Shared contracts, configuration and logging for the file simulator services."""
