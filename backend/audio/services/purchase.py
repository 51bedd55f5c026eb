"""
Purchase context.

Whether the current visitor bought a product is decided by the hosting shop,
not here. The shop plugs a resolver callable in through
AUDIO_PURCHASE_RESOLVER; it receives the request and the product and returns
a PurchaseContext, a bool, or a purchase token.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseContext:
    purchased: bool = False
    token: Optional[str] = None

    @classmethod
    def from_value(cls, value):
        """
        Normalize a resolver return value.

        False/None means not purchased, True means purchased without a token,
        and any other value is taken as the purchase token.
        """
        if isinstance(value, cls):
            return value
        if value is None or value is False:
            return NOT_PURCHASED
        if value is True:
            return cls(purchased=True)
        token = str(value)
        if not token:
            return NOT_PURCHASED
        return cls(purchased=True, token=token)


NOT_PURCHASED = PurchaseContext()


def request_purchase_context(request, product):
    """Default resolver: reads `request.purchase_context` set by shop middleware."""
    value = getattr(request, 'purchase_context', None)
    if isinstance(value, dict):
        value = value.get(product.pk, value.get(str(product.pk)))
    return value


def resolve_purchase(request, product, config) -> PurchaseContext:
    resolver = import_string(config.purchase_resolver)
    context = PurchaseContext.from_value(resolver(request, product))
    logger.debug(f"Purchase context for product {product.pk}: purchased={context.purchased}")
    return context
