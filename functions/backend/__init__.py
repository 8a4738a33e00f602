"""
Backend package for the identity consistency service.

Keeps Firebase Auth credentials in step with user profiles: profile
deletions and password changes become reconciliation tasks that are
retried, deduplicated and audited, and exposed through a FastAPI app
and a worker pool.
"""
