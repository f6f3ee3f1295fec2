"""
fees_batch -- Billing runs.

Bills every active student for one period with a transaction per student,
bounded parallelism, and a persisted run/item audit trail.

Architecture:
    fees_batch/ is a top-level package above fees_kernel and fees_config.
    Its tables share the kernel metadata and are created once
    ``fees_batch.models`` has been imported.
"""
