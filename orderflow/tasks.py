"""
Celery Tasks
Background dispatch of transition effects.

Each task drives the async EffectDispatcher on a fresh event loop. A raised
EffectDeliveryError makes Celery retry the task with exponential backoff;
payment synchronization is idempotent, so a retry never settles or refunds
twice.
"""

import asyncio
import time
from datetime import datetime, timezone

from orderflow.celery_worker import celery_app
from orderflow.core.config import get_logger, get_settings
from orderflow.core.exceptions import EffectDeliveryError
from orderflow.database import async_session_maker, engine
from orderflow.services.effects import TransitionEvent, build_effect_dispatcher
from orderflow.services.order_store import OrderStore

logger = get_logger(__name__)
settings = get_settings()


def _run(coro):
    """Run one dispatcher call; pooled connections must not outlive the loop."""
    async def runner():
        try:
            return await coro
        finally:
            await engine.dispose()

    return asyncio.run(runner())


@celery_app.task(
    bind=True,
    max_retries=settings.effect_max_retries,
    autoretry_for=(EffectDeliveryError,),
    retry_backoff=True,
    retry_backoff_max=settings.effect_retry_backoff_max,
    retry_jitter=True,
)
def dispatch_transition_effects(self, event_data: dict) -> dict:
    """
    Run notifications and payment sync for one committed transition.

    Args:
        event_data: TransitionEvent.to_dict()

    Returns:
        dict: DispatchReport plus task bookkeeping
    """
    task_id = self.request.id
    event = TransitionEvent.from_dict(event_data)

    logger.info(
        f"Task {task_id}: effects for {event.event_id} "
        f"({event.to_status.value}, attempt {self.request.retries + 1})"
    )
    start_time = time.time()

    dispatcher = build_effect_dispatcher(OrderStore(async_session_maker))
    try:
        report = _run(dispatcher.dispatch(event))
    except EffectDeliveryError as e:
        elapsed = round(time.time() - start_time, 3)
        logger.warning(f"Task {task_id}: {event.event_id} failed after {elapsed}s - {e}")
        # Celery will auto-retry based on configuration
        raise

    result = report.to_dict()
    result['task_id'] = task_id
    result['processing_time_seconds'] = round(time.time() - start_time, 3)
    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
