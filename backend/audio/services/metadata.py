"""
Product metadata store.

Opaque key-value storage per product. The default store keeps values in
contracts.ProductMeta; a shop can plug in its own through
AUDIO_METADATA_STORE.
"""

import logging
from abc import ABC, abstractmethod

from django.db import transaction
from django.utils.module_loading import import_string

from contracts.models import ProductMeta

logger = logging.getLogger(__name__)


AUDIO_FILES_HASH = 'audio_files_hash'
FORMATS_GENERATED_AT = 'formats_generated_at'
AVAILABLE_FORMATS = 'available_formats'
FORMATS_WARNING = 'formats_warning'
PLAYBACK_COUNTER = 'playback_counter'
BUNDLE_FILES = 'bundle_files'


class ProductMetadataStore(ABC):
    """Interface of the per-product key-value store."""

    @abstractmethod
    def get(self, product_id, key, default=None):
        ...

    @abstractmethod
    def set(self, product_id, key, value):
        ...

    @abstractmethod
    def delete(self, product_id, key):
        ...

    @abstractmethod
    def increment(self, product_id, key) -> int:
        ...


class ModelMetadataStore(ProductMetadataStore):
    """ProductMeta-backed store."""

    def get(self, product_id, key, default=None):
        row = ProductMeta.objects.filter(product_id=product_id, key=key).first()
        if row is None or row.value is None:
            return default
        return row.value

    def set(self, product_id, key, value):
        ProductMeta.objects.update_or_create(
            product_id=product_id,
            key=key,
            defaults={'value': value},
        )

    def delete(self, product_id, key):
        ProductMeta.objects.filter(product_id=product_id, key=key).delete()

    def increment(self, product_id, key) -> int:
        """Atomically add one to an integer value, starting from zero."""
        with transaction.atomic():
            row, _ = ProductMeta.objects.select_for_update().get_or_create(
                product_id=product_id,
                key=key,
                defaults={'value': 0},
            )
            try:
                row.value = int(row.value or 0) + 1
            except (TypeError, ValueError):
                logger.warning(f"Resetting non-numeric {key} for product {product_id}")
                row.value = 1
            row.save(update_fields=['value', 'updated_at'])
        return row.value


def get_metadata_store(config) -> ProductMetadataStore:
    """Instantiate the configured metadata store."""
    return import_string(config.metadata_store)()

