"""WHOOP sync infrastructure.

Modules:
    pipeline       — Webhook ingestion: verify, dedup, dispatch to a worker pool
    reconciliation — Periodic cursor-based re-fetch that backstops lost webhooks
    dedup          — Bounded trace_id window (webhook at-least-once delivery)
    sink           — Idempotent "apply update" sink shared by both paths
"""
