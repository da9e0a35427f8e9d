"""PolicyGuard Celery worker package.

Modules
-------
process_worker
    Celery task that runs one upload through
    :class:`~policyguard.core.pipeline.DocumentProcessingPipeline`.
upload_lock
    Redis lock keeping at most one run in flight per upload.
"""
