"""
Game lifecycle engine.

Moves sporting events from discovery to settlement:

- status: provider status -> canonical lifecycle state, transition rules
- job_lock: TTL leases so each named job runs on one worker at a time
- event_store: schema-adaptive reads and upserts on the events table
- discovery / sync / finalize: provider-driven jobs
- settlement: settlement queue, payout distribution, treasury ledger
- health: anomaly checks and remediation
- backfill: replay of past days
- orchestrator: runs jobs under their lease and summarizes the outcome
"""
