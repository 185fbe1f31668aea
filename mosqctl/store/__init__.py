"""Persistent stores for users, access rules and bridges."""
