"""
Audio signals and model hooks.

`play_started` is sent whenever a stream (or redirect to one) begins. The
model receivers keep demos and format bundles in step with product edits.
"""

import logging

from django.db import transaction
from django.dispatch import Signal, receiver

from .conf import get_audio_settings

logger = logging.getLogger(__name__)


# Sent with product_id, url and request
play_started = Signal()


@receiver(play_started, dispatch_uid='audio.count_play')
def count_play(sender, product_id, url, request=None, **kwargs):
    """Queue the play for counting and analytics; nothing is written in the request."""
    from .services.analytics import client_id_from_request
    from .tasks import record_play

    client_id = client_id_from_request(request)
    transaction.on_commit(lambda: record_play.delay(product_id, url, client_id))


def remember_demo_settings(sender, instance, **kwargs):
    """pre_save: keep the stored demo settings to compare after saving."""
    if not instance.pk:
        instance._previous_demo_settings = None
        return
    instance._previous_demo_settings = (
        sender.objects.filter(pk=instance.pk)
        .values_list('demo_percent', 'secure_demo')
        .first()
    )


def product_saved(sender, instance, created, **kwargs):
    """post_save of Product: drop stale demos and refresh format bundles."""
    from .services.demo import DemoService

    previous = getattr(instance, '_previous_demo_settings', None)
    if previous is not None and previous != (instance.demo_percent, instance.secure_demo):
        logger.info(f"Demo settings of product {instance.pk} changed, deleting its demos")
        DemoService(get_audio_settings()).delete_product_demos(instance.pk)

    schedule_on_commit(instance.pk)


def audio_asset_changed(sender, instance, **kwargs):
    """post_save / post_delete of AudioAsset."""
    schedule_on_commit(instance.product_id)


def schedule_on_commit(product_id):
    if not get_audio_settings().process_on_save:
        return
    from .tasks import schedule_product_formats

    transaction.on_commit(lambda: schedule_product_formats(product_id))
