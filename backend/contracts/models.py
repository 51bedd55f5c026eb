"""
Shared Data Contract Models
===========================
Owned by the hosting shop; the audio app reads them and writes only
ProductMeta.

Models:
    - Product: Purchasable item with optional per-product demo overrides
    - AudioAsset: One downloadable audio file of a product (a track)
    - ProductMeta: Opaque key-value metadata per product
"""

from django.core.validators import MaxValueValidator
from django.db import models


AUDIO_EXTENSIONS = ('wav', 'mp3', 'flac', 'aiff', 'alac', 'ogg', 'm4a')


def file_extension(path):
    """Lower-cased extension of a path or URL, query string removed."""
    path = path.split('?', 1)[0].split('#', 1)[0]
    name = path.rstrip('/').rsplit('/', 1)[-1]
    return name.rsplit('.', 1)[-1].lower() if '.' in name else ''


class Product(models.Model):
    """
    A downloadable product.
    Demo settings left empty fall back to the global configuration.
    """
    name = models.CharField(
        max_length=255,
        help_text="Product title"
    )
    downloadable = models.BooleanField(
        default=True,
        help_text="Whether the product ships downloadable files"
    )
    secure_demo = models.BooleanField(
        null=True,
        blank=True,
        help_text="Serve truncated demos to non-purchasers (empty = global setting)"
    )
    demo_percent = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MaxValueValidator(100)],
        help_text="Percentage of each track kept in demos (empty = global setting)"
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Last time the product was saved"
    )

    class Meta:
        ordering = ['id']
        verbose_name = "Product"
        verbose_name_plural = "Products"

    def __str__(self):
        return self.name


class AudioAsset(models.Model):
    """
    A downloadable audio file attached to a product.
    `index` is the stable key used in stream URLs; it is not necessarily
    sequential (e.g. "0_42").
    """
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name='audio_assets',
        help_text="Owning product"
    )
    index = models.CharField(
        max_length=64,
        help_text="Stable track key within the product"
    )
    name = models.CharField(
        max_length=255,
        help_text="Display name of the track"
    )
    file = models.CharField(
        max_length=1024,
        help_text="Local filesystem path or remote URL of the source file"
    )
    position = models.PositiveIntegerField(
        default=0,
        help_text="Order of the track within the product"
    )

    class Meta:
        ordering = ['position', 'id']
        verbose_name = "Audio Asset"
        verbose_name_plural = "Audio Assets"
        constraints = [
            models.UniqueConstraint(
                fields=['product', 'index'],
                name='audioasset_product_index_uniq'
            ),
        ]

    def __str__(self):
        return f"{self.product_id}/{self.index}: {self.name}"

    @property
    def extension(self):
        return file_extension(self.file)

    @property
    def is_audio(self):
        return self.extension in AUDIO_EXTENSIONS


class ProductMeta(models.Model):
    """
    Key-value metadata attached to a product.
    Used for format bundle bookkeeping and play counters.
    """
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name='meta',
        help_text="Product the value belongs to"
    )
    key = models.CharField(
        max_length=100,
        help_text="Metadata key"
    )
    value = models.JSONField(
        null=True,
        blank=True,
        help_text="JSON-serializable value"
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Last time the value changed"
    )

    class Meta:
        verbose_name = "Product Meta"
        verbose_name_plural = "Product Meta"
        constraints = [
            models.UniqueConstraint(
                fields=['product', 'key'],
                name='productmeta_product_key_uniq'
            ),
        ]

    def __str__(self):
        return f"{self.product_id}:{self.key}"
