"""
approval_batch -- Batch decisions over many approval requests.

Applies one approver decision across a list of approval requests with
per-item SAVEPOINT isolation and a per-item result report, so a caller can
present partial success.

Architecture:
    approval_batch/ is a top-level package that calls into
    approval_kernel.services.  Nothing in approval_kernel imports from
    approval_batch.
"""
