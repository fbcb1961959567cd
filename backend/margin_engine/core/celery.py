from celery import Celery
from margin_engine.core.config import settings

celery_app = Celery(
    "margin_risk",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "margin_engine.tasks.margin_risk_tasks",
    ],
    beat_scheduler='redbeat.RedBeatScheduler'
)

celery_app.conf.update(
    timezone="UTC",
    enable_utc=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_track_started=True,
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_acks_late=False,
    redis_retry_on_timeout=True,
    redis_socket_connect_timeout=30,
    redis_socket_timeout=30,
    redis_max_connections=20,
    worker_max_tasks_per_child=1000,
    redbeat_redis_url=settings.REDIS_URL,
    task_routes={
        "tasks.run_margin_risk_tick": {"queue": "margin_risk"},
        "tasks.check_margin_position": {"queue": "margin_risk"},
    },
    beat_schedule={
        # Margin risk tick every MONITOR_INTERVAL_SECONDS (30s by default)
        'run-margin-risk-tick': {
            'task': 'tasks.run_margin_risk_tick',
            'schedule': settings.MONITOR_INTERVAL_SECONDS,
            # a tick that could not start before the next one is due is dropped
            'options': {'expires': settings.MONITOR_INTERVAL_SECONDS},
        },
    }
)
