"""Job orchestrator for multi-step AI course generation.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not moving messages. It is the dependency graph
between generation tasks and the job-level bookkeeping around it:

- Tasks reference each other by symbolic key and only become runnable once
  every dependency is completed or skipped.
- Job counters and progress are recomputed from task rows in the same
  transaction as every task status change.
- Failures are classified deterministically and drive a bounded retry policy
  plus operator recovery actions (retry, skip, cancel, pause, resume).
- A health sweep reconciles job status and rescues tasks orphaned by crashed
  workers.

A broker would add an operational dependency while all of the above would
still live in custom task code. A SQLite-backed queue with a compare-and-swap
claim keeps the whole state machine in one transactional store.
"""
