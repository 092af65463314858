"""Durable job queue for post-upload artifact analysis.

Producers insert `pending` jobs into a SQLite-backed job store; a dispatcher
claims small batches, runs the analysis capability for each job in turn and
drives the retry/failure state machine; a reaper deletes completed jobs once
they age out of the retention window.

Scaling limit
~~~~~~~~~~~~~
Sweeps are serialized by a lock owned by one `Dispatcher` instance.  The job
store offers no distributed lock, so two processes sharing one database may
claim the same pending job.  Run one worker process per database.
"""
