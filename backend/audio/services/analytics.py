"""
Play analytics.

Counts plays per product and forwards `play` events to a GA4 property via
the Measurement Protocol.
"""

import logging

import httpx

logger = logging.getLogger(__name__)


MEASUREMENT_URL = 'https://www.google-analytics.com/mp/collect'
EVENT_CATEGORY = 'Audio Player'
REQUEST_TIMEOUT = 10


def client_id_from_request(request) -> str:
    """GA client id from the `_ga` cookie, falling back to the client IP."""
    cookie = request.COOKIES.get('_ga', '') if request is not None else ''
    parts = cookie.split('.', 2)
    if len(parts) == 3 and parts[2]:
        return parts[2]
    if request is None:
        return ''
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', '') or ''


def build_play_event(client_id: str, product_id: int, url: str) -> dict:
    return {
        'client_id': client_id,
        'events': [
            {
                'name': 'play',
                'params': {
                    'event_category': EVENT_CATEGORY,
                    'event_label': url,
                    'event_value': product_id,
                },
            },
        ],
    }


def send_play_event(property_id: str, api_secret: str, client_id: str, product_id: int, url: str) -> bool:
    """
    Post a play event to GA4.

    Returns:
        True if the collector accepted the event
    """
    payload = build_play_event(client_id, product_id, url)
    params = {'measurement_id': property_id, 'api_secret': api_secret}
    try:
        with httpx.Client(timeout=REQUEST_TIMEOUT) as client:
            response = client.post(MEASUREMENT_URL, params=params, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Play event for product {product_id} not delivered: {e}")
        return False
    logger.debug(f"Play event sent for product {product_id}")
    return True
