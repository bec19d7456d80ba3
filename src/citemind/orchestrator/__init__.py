"""Event routing, durable job queue and the worker that executes jobs as agent runs.

Why a SQLite-backed queue instead of a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Jobs are enqueued by the event router and drained by one or more workers on
the same host. The interesting part is not delivery but what happens around
each attempt: an audited agent run per attempt, per-step budget gating, a
critic gate before completion and a failure class that decides whether the
job may be retried. A plain claim -> execute -> finalize loop over the same
database that stores runs and steps keeps the audit trail and the queue
consistent without an extra operational dependency.
"""
