from celery import Celery

from journey_engine.config import CELERY_BROKER_URL, CELERY_RESULT_BACKEND

celery_app = Celery(
    "journey_engine_tasks",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["journey_engine.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_always_eager=False,
    task_eager_propagates=True,
    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
    # Sweeps are periodic; a missed run is picked up by the next one.
    task_default_retry_delay=60,
    task_max_retries=3,
    worker_max_tasks_per_child=1000,
    worker_disable_rate_limits=False,
    result_expires=3600,
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,
    result_backend_transport_options={
        "retry_on_timeout": True,
        "max_retries": 3,
    },
)
