"""Persistence infrastructure: declarative base, storage handle, unit of work."""
