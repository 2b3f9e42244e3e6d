"""
API routes.

- lifecycle: operator endpoints for jobs, leases, settlements, treasury, health and backfill
"""
