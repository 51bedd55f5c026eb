"""
Audio app configuration.

Connects the model hooks and makes sure the demo directories exist.
"""

import logging
from django.apps import AppConfig

logger = logging.getLogger(__name__)


class AudioConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'audio'

    def ready(self):
        from django.db.models.signals import post_delete, post_save, pre_save
        from contracts.models import AudioAsset, Product
        from . import signals
        from .conf import get_audio_settings

        pre_save.connect(signals.remember_demo_settings, sender=Product, dispatch_uid='audio.product_pre_save')
        post_save.connect(signals.product_saved, sender=Product, dispatch_uid='audio.product_saved')
        post_save.connect(signals.audio_asset_changed, sender=AudioAsset, dispatch_uid='audio.asset_saved')
        post_delete.connect(signals.audio_asset_changed, sender=AudioAsset, dispatch_uid='audio.asset_deleted')

        config = get_audio_settings()
        for directory in (config.demo_root, config.purchased_root, config.sources_root):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning(
                    f"Could not create demo directory {directory}: {str(e)}. "
                    f"Demos will be created on first request."
                )
