"""Fleet coordination over plain files in the project's dev directory.

Why not a broker or a database-first queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Every participant (slot workers, the fixer, the watchdog, an operator at a
terminal, a dashboard reading status) runs on one host and shares one
filesystem. The backlog and failure ledger are edited by hand as often as
they are edited by workers, so they stay human-readable markdown:

- ``backlog.md`` checkbox lines are the task queue (pending/claimed/done).
- ``failed-tasks.md`` is a pipe table of failed attempts and fix outcomes.
- Slot locks and heartbeat files carry liveness; a directory mutex
  serializes every mutation and a temp-file rename makes it atomic.

The optional SQLite store only mirrors these files for faster reads. Files
stay authoritative; any store error falls back to parsing them.
"""
