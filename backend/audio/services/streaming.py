"""
Stream Service
==============
Decides what a visitor hears for a track and streams it.

Decision per request:
1. Purchased: the pre-generated mp3 bundle file, else the local source, else
   a redirect to (or a purchaser-private copy of) the remote source
2. Not purchased, demos disabled for the product: the full source
3. Not purchased: a persisted demo, generated on first request, or the first
   part of a local source served as a bounded entity when demos are not
   persisted
"""

import logging
import math
import os

from django.http import HttpResponseRedirect

from ..exceptions import TrackNotFound
from ..signals import play_started
from .demo import DemoService, generation_lock, is_valid_demo
from .formats import FormatProcessor
from .ranges import file_response
from .resolver import TrackResolver

logger = logging.getLogger(__name__)


class StreamService:
    """Serves full tracks to purchasers and demos to everyone else."""

    def __init__(self, config, resolver=None, demos=None, bundles=None):
        self.config = config
        self.resolver = resolver or TrackResolver(config)
        self.demos = demos or DemoService(config)
        self._bundles = bundles

    @property
    def bundles(self):
        if self._bundles is None:
            self._bundles = FormatProcessor(self.config, resolver=self.resolver)
        return self._bundles

    @property
    def demo_required(self) -> bool:
        return self.config.secure_demo and self.config.demo_percent < 100

    def stream(self, product, track, purchase, range_header=None, request=None):
        """
        Build the response for one track request.

        Args:
            product: contracts.Product the track belongs to
            track: Resolved Track
            purchase: PurchaseContext of the visitor
            range_header: Raw Range header value
            request: Originating request, forwarded to play listeners

        Returns:
            StreamingHttpResponse (200/206) or HttpResponseRedirect (302)

        Raises:
            TrackNotFound, SourceUnavailable, WriteFailed: Nothing to serve
            RangeNotSatisfiable: The range falls outside the entity
        """
        if purchase.purchased:
            response = self._stream_purchased(track, purchase, range_header)
        elif not self.demo_required:
            response = self._stream_full(track, range_header)
        else:
            response = self._stream_demo(track, range_header)

        if self.starts_playback(response):
            play_started.send_robust(
                sender=self.__class__,
                product_id=product.pk,
                url=track.source,
                request=request,
            )
        return response

    @staticmethod
    def starts_playback(response) -> bool:
        """Seeks and resumed transfers (ranges not starting at byte 0) are not new plays."""
        if response.status_code != 206:
            return True
        return response['Content-Range'].startswith('bytes 0-')

    # ------------------------------------------------------------------
    # Full tracks
    # ------------------------------------------------------------------

    def _respond(self, path, range_header, track, limit=None):
        return file_response(
            path,
            range_header,
            filename=self._display_filename(track, path),
            limit=limit,
            chunk_size=self.config.chunk_size,
        )

    @staticmethod
    def _display_filename(track, path) -> str:
        name = os.path.basename(track.display_name or '') or os.path.basename(str(path))
        ext = os.path.splitext(str(path))[1]
        if ext and not name.lower().endswith(ext.lower()):
            name = f"{os.path.splitext(name)[0]}{ext}"
        return name

    def _redirect(self, track):
        url = self.resolver.process_cloud_url(self.resolver.fix_url(track.source))
        logger.info(f"Redirecting track {track.index} of product {track.product_id} to {url}")
        return HttpResponseRedirect(url)

    def _stream_full(self, track, range_header):
        local = self.resolver.local_path(track.source)
        if local is not None:
            return self._respond(local, range_header, track)
        if self.resolver.is_remote(track.source):
            return self._redirect(track)
        raise TrackNotFound(f"Source file missing for track {track.index}: {track.source}")

    def _stream_purchased(self, track, purchase, range_header):
        formats = ('mp3', track.extension) if track.extension != 'mp3' else ('mp3',)
        bundle = self.bundles.find_bundle_file(track, formats=formats)
        if bundle is not None:
            logger.debug(f"Serving bundle file {bundle} for track {track.index}")
            return self._respond(bundle, range_header, track)

        local = self.resolver.local_path(track.source)
        if local is not None:
            return self._respond(local, range_header, track)
        if not self.resolver.is_remote(track.source):
            raise TrackNotFound(f"Source file missing for track {track.index}: {track.source}")

        if self.config.proxy_purchased_remote and purchase.token:
            private = self.demos.purchased_path(track.source, purchase.token)
            self.resolver.download(track.source, private)
            return self._respond(private, range_header, track)
        return self._redirect(track)

    # ------------------------------------------------------------------
    # Demos
    # ------------------------------------------------------------------

    def _stream_demo(self, track, range_header):
        if not self.config.persist_demos and not self.resolver.is_segmented(track):
            local = self.resolver.local_path(track.source)
            if local is not None:
                limit = int(math.floor(os.path.getsize(local) * self.config.demo_percent / 100))
                return self._respond(local, range_header, track, limit=limit)

        path = self.ensure_demo(track)
        return self._respond(path, range_header, track)

    def watermark_path(self):
        if not self.config.watermark_path:
            return None
        path = self.resolver.local_path(self.config.watermark_path)
        if path is None:
            logger.warning(f"Watermark {self.config.watermark_path} is not a local file, skipping it")
        return path

    def ensure_demo(self, track):
        """
        Path of a valid demo for the track, generating it if needed.

        Raises:
            TrackNotFound, SourceUnavailable: The source cannot be obtained
            WriteFailed: The demo cannot be written
        """
        dest = self.demos.demo_path(track.source)
        if is_valid_demo(dest):
            return dest

        lock_timeout = self.config.transcoder_timeout + self.config.demo_lock_wait
        with generation_lock(dest.name, timeout=lock_timeout) as acquired:
            if not acquired:
                logger.info(f"Demo {dest.name} is being generated elsewhere, waiting")
                if self.demos.wait_for_demo(dest, self.config.demo_lock_wait):
                    return dest
            elif is_valid_demo(dest):
                return dest

            source = self.resolver.ensure_local(track)
            result = self.demos.make_demo(
                source,
                dest,
                self.config.demo_percent,
                watermark=self.watermark_path(),
            )
            logger.info(
                f"Generated demo for product {track.product_id} track {track.index} "
                f"via {result.method}: {result.path}"
            )
            return result.path
