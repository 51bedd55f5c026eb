"""
Audio delivery configuration.

Reads the AUDIO_* Django settings into an immutable AudioSettings value that
is passed to every service at construction. Per-product overrides are applied
once with `AudioSettings.for_product()`.
"""

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


DEFAULT_PURCHASE_RESOLVER = 'audio.services.purchase.request_purchase_context'
DEFAULT_METADATA_STORE = 'audio.services.metadata.ModelMetadataStore'


def _media_root():
    return Path(getattr(settings, 'MEDIA_ROOT', '') or 'media')


@dataclass(frozen=True)
class AudioSettings:
    """Read-only configuration for the demo, streaming and format services."""

    transcoder_path: str = ''
    transcoder_timeout: int = 300
    watermark_path: str = ''
    demo_percent: int = 30
    secure_demo: bool = True
    registered_only: bool = False
    persist_demos: bool = True
    proxy_purchased_remote: bool = False
    demo_root: Path = Path('media/demos')
    formats_root: Path = Path('media/formats')
    local_url_roots: dict = field(default_factory=dict)
    remote_timeout: int = 300
    chunk_size: int = 8192
    demo_lock_wait: int = 30
    duration_hook: str = ''
    purchase_resolver: str = DEFAULT_PURCHASE_RESOLVER
    metadata_store: str = DEFAULT_METADATA_STORE
    process_on_save: bool = True
    reset_purchased_interval: str = 'daily'
    analytics_property: str = ''
    analytics_api_secret: str = ''

    def __post_init__(self):
        if not 0 <= self.demo_percent <= 100:
            raise ImproperlyConfigured(
                f"AUDIO_DEMO_PERCENT must be between 0 and 100, got {self.demo_percent}"
            )
        if self.chunk_size <= 0:
            raise ImproperlyConfigured("AUDIO_STREAM_CHUNK_SIZE must be positive")

    @property
    def purchased_root(self):
        return self.demo_root / 'purchased'

    @property
    def sources_root(self):
        return self.demo_root / 'sources'

    def for_product(self, product):
        """Return a copy with the product's demo overrides applied."""
        overrides = {}
        if product is not None:
            if product.secure_demo is not None:
                overrides['secure_demo'] = product.secure_demo
            if product.demo_percent is not None:
                overrides['demo_percent'] = int(product.demo_percent)
        if not overrides:
            return self
        return dataclasses.replace(self, **overrides)


def get_audio_settings():
    """
    Build AudioSettings from the current Django settings.

    Not cached, so `override_settings` in tests takes effect immediately.
    """
    media_root = _media_root()
    media_url = getattr(settings, 'MEDIA_URL', '/media/') or '/media/'

    return AudioSettings(
        transcoder_path=getattr(settings, 'AUDIO_TRANSCODER_PATH', ''),
        transcoder_timeout=int(getattr(settings, 'AUDIO_TRANSCODER_TIMEOUT', 300)),
        watermark_path=getattr(settings, 'AUDIO_WATERMARK_PATH', ''),
        demo_percent=int(getattr(settings, 'AUDIO_DEMO_PERCENT', 30)),
        secure_demo=bool(getattr(settings, 'AUDIO_SECURE_DEMO', True)),
        registered_only=bool(getattr(settings, 'AUDIO_REGISTERED_ONLY', False)),
        persist_demos=bool(getattr(settings, 'AUDIO_PERSIST_DEMOS', True)),
        proxy_purchased_remote=bool(getattr(settings, 'AUDIO_PROXY_PURCHASED_REMOTE', False)),
        demo_root=Path(getattr(settings, 'AUDIO_DEMO_ROOT', None) or media_root / 'demos'),
        formats_root=Path(getattr(settings, 'AUDIO_FORMATS_ROOT', None) or media_root / 'formats'),
        local_url_roots=dict(
            getattr(settings, 'AUDIO_LOCAL_URL_ROOTS', None) or {media_url: str(media_root)}
        ),
        remote_timeout=int(getattr(settings, 'AUDIO_REMOTE_TIMEOUT', 300)),
        chunk_size=int(getattr(settings, 'AUDIO_STREAM_CHUNK_SIZE', 8192)),
        demo_lock_wait=int(getattr(settings, 'AUDIO_DEMO_LOCK_WAIT', 30)),
        duration_hook=getattr(settings, 'AUDIO_DEMO_DURATION_HOOK', ''),
        purchase_resolver=getattr(settings, 'AUDIO_PURCHASE_RESOLVER', DEFAULT_PURCHASE_RESOLVER),
        metadata_store=getattr(settings, 'AUDIO_METADATA_STORE', DEFAULT_METADATA_STORE),
        process_on_save=bool(getattr(settings, 'AUDIO_PROCESS_ON_SAVE', True)),
        reset_purchased_interval=getattr(settings, 'AUDIO_RESET_PURCHASED_INTERVAL', 'daily'),
        analytics_property=getattr(settings, 'AUDIO_ANALYTICS_PROPERTY', ''),
        analytics_api_secret=getattr(settings, 'AUDIO_ANALYTICS_API_SECRET', ''),
    )
