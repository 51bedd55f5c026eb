"""
Views for audio streaming and format bundle downloads.
"""

import logging

from django.core.exceptions import SuspiciousFileOperation
from django.utils.text import get_valid_filename
from rest_framework import status
from rest_framework.negotiation import BaseContentNegotiation
from rest_framework.renderers import JSONRenderer
from rest_framework.response import Response
from rest_framework.views import APIView

from .conf import get_audio_settings
from .exceptions import (
    RangeNotSatisfiable,
    SourceUnavailable,
    TrackNotFound,
    WriteFailed,
)
from .permissions import RegisteredUsersOnly
from .serializers import ProductFormatsSerializer
from .services.formats import FORMATS, FormatProcessor
from .services.metadata import (
    AVAILABLE_FORMATS,
    FORMATS_GENERATED_AT,
    FORMATS_WARNING,
    get_metadata_store,
)
from .services.purchase import resolve_purchase
from .services.ranges import file_response
from .services.resolver import TrackResolver
from .services.streaming import StreamService

logger = logging.getLogger(__name__)


def error_response(message, status_code, headers=None):
    return Response({'error': message}, status=status_code, headers=headers)


class IgnoreClientContentNegotiation(BaseContentNegotiation):
    """
    Audio players send `Accept: audio/*`; errors are still rendered as JSON
    instead of failing negotiation with 406.
    """

    def select_parser(self, request, parsers):
        return parsers[0] if parsers else None

    def select_renderer(self, request, renderers, format_suffix=None):
        return (renderers[0], renderers[0].media_type)


class AudioAPIView(APIView):
    renderer_classes = [JSONRenderer]
    content_negotiation_class = IgnoreClientContentNegotiation

    def handle_exception(self, exc):
        response = super().handle_exception(exc)
        if isinstance(response.data, dict) and 'detail' in response.data:
            response.data = {'error': response.data['detail']}
        return response

    def handle_delivery_errors(self, func, *args, **kwargs):
        """Run a delivery step and translate audio errors into responses."""
        try:
            return func(*args, **kwargs)
        except (TrackNotFound, SourceUnavailable, WriteFailed) as e:
            logger.info(f"{self.request.method} {self.request.path}: {e}")
            return error_response(str(e), status.HTTP_404_NOT_FOUND)
        except RangeNotSatisfiable as e:
            return error_response(
                str(e),
                status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
                headers={'Content-Range': f'bytes */{e.total}'},
            )
        except OSError as e:
            logger.error(f"I/O error serving {self.request.path}: {str(e)}", exc_info=True)
            return error_response('Could not read audio file', status.HTTP_500_INTERNAL_SERVER_ERROR)


class StreamView(AudioAPIView):
    """
    Stream a track: the full file for purchasers, a demo for everyone else.

    Honours single byte ranges (206) and answers 416 with
    `Content-Range: bytes */<size>` for ranges outside the file.
    """
    permission_classes = [RegisteredUsersOnly]

    def get(self, request, product_id, track_index):
        return self.handle_delivery_errors(self._stream, request, product_id, track_index)

    def _stream(self, request, product_id, track_index):
        config = get_audio_settings()
        resolver = TrackResolver(config)
        product = resolver.get_product(product_id)
        track = resolver.get_track(product, track_index)

        config = config.for_product(product)
        purchase = resolve_purchase(request, product, config)
        return StreamService(config).stream(
            product,
            track,
            purchase,
            range_header=request.META.get('HTTP_RANGE'),
            request=request,
        )


class DownloadView(AudioAPIView):
    """Download the zip of one format bundle. Purchasers only."""
    permission_classes = [RegisteredUsersOnly]

    def get(self, request, product_id, fmt):
        return self.handle_delivery_errors(self._download, request, product_id, fmt)

    def _download(self, request, product_id, fmt):
        config = get_audio_settings()
        product = TrackResolver.get_product(product_id)

        if fmt not in FORMATS:
            return error_response(
                f"Unknown format '{fmt}'. Choose one of: {', '.join(FORMATS)}",
                status.HTTP_400_BAD_REQUEST,
            )

        purchase = resolve_purchase(request, product, config)
        if not purchase.purchased:
            return error_response('Purchase required to download this product', status.HTTP_403_FORBIDDEN)

        archive = FormatProcessor(config).archive_path(product.pk, fmt)
        if not archive.is_file():
            return error_response(f"No {fmt} package available for this product", status.HTTP_404_NOT_FOUND)

        try:
            base_name = get_valid_filename(product.name)
        except SuspiciousFileOperation:
            base_name = f"product_{product.pk}"

        logger.info(f"Serving {fmt} package of product {product.pk}")
        return file_response(
            archive,
            request.META.get('HTTP_RANGE'),
            filename=f"{base_name}_{fmt}.zip",
            chunk_size=config.chunk_size,
            disposition='attachment',
        )


class ProductFormatsView(AudioAPIView):
    """Format bundle state of a product."""

    def get(self, request, product_id):
        return self.handle_delivery_errors(self._formats, request, product_id)

    def _formats(self, request, product_id):
        product = TrackResolver.get_product(product_id)
        store = get_metadata_store(get_audio_settings())
        data = {
            'product_id': product.pk,
            'available_formats': store.get(product.pk, AVAILABLE_FORMATS, []),
            'formats_generated_at': store.get(product.pk, FORMATS_GENERATED_AT),
            'formats_warning': store.get(product.pk, FORMATS_WARNING),
        }
        serializer = ProductFormatsSerializer(data, context={'request': request})
        return Response(serializer.data)
