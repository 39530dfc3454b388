"""Durable job queue for long-running AI operations.

Workers are stateless pollers. Any number of them may point at the same
SQLite database; mutual exclusion comes entirely from the guarded
``UPDATE jobs SET status = 'running' ... WHERE status = 'pending'`` in
`JobRepository.claim_next_pending_job`. There is no in-process
lock on top of it; workers are usually separate processes.

A job stuck in ``running`` after its worker died is not recovered
automatically. Operators can fail such jobs explicitly with
``study-pipeline jobs fail-stale`` (or by enabling
``STUDY_PIPELINE_STALE_RUNNING_AFTER_SECONDS``); jobs never go back to
``pending``.
"""
