"""Job engine for long-running background work.

Why not Celery / RQ / Dramatiq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Jobs here outlive any single worker process: a cron entry starts one
invocation per queue, the invocation runs at most one job, and a job may
span many invocations by persisting its progress and payload on the
descriptor. The interesting parts are not message transport but:

- A durable lifecycle state machine (new, init, run, wait, paused,
  broken, complete) that any invocation can pick up from.
- Per-queue exclusivity decided by descriptor status, with an atomic claim
  when a descriptor enters ``init``.
- Stall detection inside the run loop and across invocations, with a
  bounded number of automatic restarts.
- A memory watchdog that suspends a job cooperatively instead of letting
  the host process die.

A broker would add an operational dependency for what is a single-host,
SQLite-backed scheduler, while all of the above would still have to be
written as custom logic around it.
"""
