"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend for
transition effects.
"""

from celery import Celery

from orderflow.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'orderflow_effects',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['orderflow.tasks']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # One effect at a time per worker process
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    result_expires=3600,

    # An effect is acknowledged only once it ran; a lost worker requeues it
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    broker_connection_retry_on_startup=True,
)


if __name__ == '__main__':
    celery_app.start()
