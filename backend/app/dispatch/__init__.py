"""
dispatch — Multi-channel notification dispatch and scheduling.

Sub-modules:
    channels/   — Per-channel senders (email, SMS, in-app)
    models      — Jobs, outcomes, store records and state enums
    job_queue   — Durable job queue with retry and backoff
    worker      — Worker pool: deliver, log, settle
    scheduler   — Promotion, campaign completion and retention sweeps
    campaigns   — Campaign lifecycle and fan-out
    service     — Enqueue API and status query
"""
