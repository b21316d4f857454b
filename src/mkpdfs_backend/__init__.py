"""
Mkpdfs Backend - asynchronous PDF generation pipeline

This package implements the job pipeline behind the Mkpdfs document
generation API. A fast submit request writes a job record and enqueues a
message; a worker later renders the document, records the outcome and
notifies the caller through a signed webhook.

- Job submission with write-then-enqueue ordering
- At-least-once queue consumption with redelivery and dead-lettering
- Idempotent job state transitions (pending, processing, completed, failed)
- Monthly usage accounting
- Signed webhook delivery with bounded retries and URL safety checks
- A check-then-commit rate limiter for abuse-sensitive endpoints

Key Components:
    - submitter: validates requests, writes the job, enqueues it
    - job_queue: SQS and in-memory queues plus the polling consumer
    - worker: the job state machine
    - webhooks: signing, delivery and URL validation
    - database / usage_ledger: SQLite status store and usage counters
    - renderer / storage: renderer contract and S3 artifact storage
    - rate_limiter: fixed-window counter with separate check and record
    - dependencies: builds everything from configuration
    - main: thin FastAPI front door

Usage:
    Run the API server with:
        uvicorn mkpdfs_backend.main:app --host 0.0.0.0 --port 8000

    Run a queue worker with:
        mkpdfs-worker
"""
