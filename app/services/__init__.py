"""
Services module for lifecycle business logic.

- lifecycle: discovery, sync, finalize, settlement, health and backfill
"""
