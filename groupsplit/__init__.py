"""Shared-expense groups with net balance reporting."""
