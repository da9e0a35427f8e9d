"""Celery application factory for PolicyGuard.

Creates and configures the shared Celery application that runs document
processing jobs outside the API process.

The broker and result backend are both configured to use Redis (sourced from
``settings.redis_url``).  Tasks are routed to a ``policyguard`` queue by
default.

Usage (importing the app in a task module)::

    from policyguard.celery_app import celery_app

    @celery_app.task
    def my_task():
        ...

Starting a worker::

    celery -A policyguard.celery_app worker --loglevel=info -Q policyguard
"""

from celery import Celery

from policyguard.config import get_settings

_settings = get_settings()

#: Shared Celery application instance.  Import this in task modules.
celery_app = Celery(
    "policyguard",
    broker=str(_settings.redis_url),
    backend=str(_settings.redis_url),
    # Task modules that define @celery_app.task decorators.
    include=["policyguard.workers.process_worker"],
)

celery_app.conf.update(
    # Serialisation
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task routing - all PolicyGuard tasks go to the "policyguard" queue
    task_default_queue="policyguard",
    # Retry policy defaults (tasks may override)
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Honour per-message priority on the Redis transport
    broker_transport_options={"priority_steps": list(range(10)), "queue_order_strategy": "priority"},
    # Result expiry - keep results for 24 h
    result_expires=86400,
)
