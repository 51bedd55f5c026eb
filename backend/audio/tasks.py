"""
Celery tasks for format bundles, purchaser file cleanup and play analytics.

Format runs are de-duplicated per product: every schedule stores a fresh
token in the cache and a queued task whose token is no longer current exits
without doing anything. A run marker in the cache keeps two workers from
rebuilding the same product at once.
"""

import logging
import uuid

from celery import shared_task
from django.core.cache import cache

from .conf import get_audio_settings
from .exceptions import TranscoderNotConfigured
from .services import analytics
from .services.demo import DemoService
from .services.formats import FormatProcessor
from .services.metadata import FORMATS_WARNING, PLAYBACK_COUNTER, get_metadata_store

logger = logging.getLogger(__name__)


SCHEDULE_TOKEN_TIMEOUT = 60 * 60 * 24
RUN_LOCK_TIMEOUT = 60 * 60
RUN_RETRY_COUNTDOWN = 30


def _schedule_key(product_id) -> str:
    return f"audio:formats:{product_id}"


def _run_key(product_id) -> str:
    return f"audio:formats-run:{product_id}"


def schedule_product_formats(product_id):
    """
    Queue a format run for a product, superseding any run still queued.

    Returns:
        The schedule token handed to the task
    """
    token = uuid.uuid4().hex
    cache.set(_schedule_key(product_id), token, SCHEDULE_TOKEN_TIMEOUT)
    process_product_formats.delay(product_id, token)
    logger.info(f"Queued format generation for product {product_id}")
    return token


@shared_task(
    bind=True,
    name='audio.tasks.process_product_formats',
    max_retries=None
)
def process_product_formats(self, product_id: int, token: str = None, force: bool = False) -> dict:
    """
    Build the format bundles of a product.

    Only one run per product touches its bundle directory at a time; a run
    that finds another in progress is re-queued.

    Args:
        product_id: Product primary key
        token: Schedule token; None runs unconditionally
        force: Rebuild even if the audio did not change

    Returns:
        Dictionary with the run outcome
    """
    if token is not None and cache.get(_schedule_key(product_id)) != token:
        logger.info(f"Format run for product {product_id} superseded by a newer save")
        return {'success': True, 'product_id': product_id, 'status': 'superseded'}

    run_key = _run_key(product_id)
    if not cache.add(run_key, token or 'running', RUN_LOCK_TIMEOUT):
        logger.info(f"Format run for product {product_id} already in progress, retrying later")
        raise self.retry(countdown=RUN_RETRY_COUNTDOWN)

    config = get_audio_settings()
    processor = FormatProcessor(config)
    try:
        result = processor.process_product(product_id, force=force)
    except TranscoderNotConfigured as e:
        logger.warning(f"Format generation for product {product_id} not possible: {e}")
        processor.store.set(product_id, FORMATS_WARNING, str(e))
        return {
            'success': False,
            'product_id': product_id,
            'status': 'transcoder_missing',
            'error': str(e),
        }
    except Exception as e:
        logger.error(f"Format generation failed for product {product_id}: {str(e)}", exc_info=True)
        raise
    finally:
        cache.delete(run_key)
        if token is not None and cache.get(_schedule_key(product_id)) == token:
            cache.delete(_schedule_key(product_id))

    return {
        'success': True,
        'product_id': product_id,
        'status': result.status,
        'formats': result.formats,
        'failures': [str(failure) for failure in result.failures],
    }


@shared_task(
    bind=True,
    name='audio.tasks.purge_purchased_files'
)
def purge_purchased_files(self) -> dict:
    """Empty the purchaser-specific demo directory."""
    config = get_audio_settings()
    DemoService(config).purge_purchased()
    return {'success': True, 'path': str(config.purchased_root)}


@shared_task(
    bind=True,
    name='audio.tasks.record_play'
)
def record_play(self, product_id: int, url: str, client_id: str = '') -> dict:
    """Count a play and forward it to analytics when a property is configured."""
    config = get_audio_settings()
    plays = get_metadata_store(config).increment(product_id, PLAYBACK_COUNTER)
    if config.analytics_property:
        send_play_event(product_id, url, client_id)
    return {'success': True, 'product_id': product_id, 'plays': plays}


@shared_task(
    bind=True,
    name='audio.tasks.send_play_event'
)
def send_play_event(self, product_id: int, url: str, client_id: str = '') -> dict:
    """Forward a play to GA4. Delivery failures are logged, never retried."""
    config = get_audio_settings()
    if not config.analytics_property:
        return {'success': False, 'skipped': True}

    delivered = analytics.send_play_event(
        config.analytics_property,
        config.analytics_api_secret,
        client_id,
        product_id,
        url,
    )
    return {'success': delivered, 'product_id': product_id}
