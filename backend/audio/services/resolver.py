"""
Track Resolver
==============
Maps (product id, track index) onto a Track and decides where its bytes live:
a local file, a URL under a locally served prefix, or a remote URL that has to
be downloaded first.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from contracts.models import AUDIO_EXTENSIONS, Product
from ..exceptions import SourceUnavailable, TrackNotFound
from .demo import demo_filename

logger = logging.getLogger(__name__)


SEGMENTED_EXTENSIONS = ('m3u8', 'm3u')
DRIVE_FILE_PATTERN = re.compile(r'drive\.google\.com/file/d/([\w-]+)')
DRIVE_DOWNLOAD_URL = 'https://drive.google.com/uc?export=download&id={file_id}'


@dataclass(frozen=True)
class Track:
    """One downloadable audio file of a product."""

    product_id: int
    index: str
    source: str
    extension: str
    display_name: str

    @classmethod
    def from_asset(cls, asset):
        return cls(
            product_id=asset.product_id,
            index=str(asset.index),
            source=asset.file,
            extension=asset.extension,
            display_name=asset.name or os.path.basename(urlparse(asset.file).path),
        )

    @property
    def is_audio(self) -> bool:
        return self.extension in AUDIO_EXTENSIONS


class TrackResolver:
    """Looks tracks up and locates their bytes."""

    def __init__(self, config):
        self.config = config

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @staticmethod
    def get_product(product_id) -> Product:
        try:
            return Product.objects.get(pk=product_id)
        except (Product.DoesNotExist, ValueError, TypeError):
            raise TrackNotFound(f"Product {product_id} not found") from None

    @staticmethod
    def get_track(product, index) -> Track:
        """
        Find a track by its index key.

        Falls back to the n-th asset when no key matches and the index is
        numeric, so positional links keep working.

        Raises:
            TrackNotFound: If nothing matches or the track has no source
        """
        index = str(index)
        assets = product.audio_assets.all()
        asset = assets.filter(index=index).first()
        if asset is None and index.isdigit():
            position = int(index)
            asset = next(iter(assets[position:position + 1]), None)
        if asset is None:
            raise TrackNotFound(f"Track {index} not found on product {product.pk}")
        if not asset.file:
            raise TrackNotFound(f"Track {index} of product {product.pk} has no file")
        return Track.from_asset(asset)

    # ------------------------------------------------------------------
    # URL handling
    # ------------------------------------------------------------------

    @staticmethod
    def fix_url(url: str) -> str:
        if url.startswith('//'):
            return f"https:{url}"
        return url

    @staticmethod
    def process_cloud_url(url: str) -> str:
        """Turn cloud share links into direct download links."""
        match = DRIVE_FILE_PATTERN.search(url)
        if match:
            return DRIVE_DOWNLOAD_URL.format(file_id=match.group(1))
        return url

    @staticmethod
    def is_remote(url: str) -> bool:
        return urlparse(url).scheme in ('http', 'https') or url.startswith('//')

    @staticmethod
    def is_segmented(track) -> bool:
        return track.extension in SEGMENTED_EXTENSIONS

    def local_path(self, url: str) -> Optional[Path]:
        """
        Filesystem path for a source, or None if it has to be fetched.

        Handles plain paths, file:// URLs, and URLs under a prefix listed in
        AUDIO_LOCAL_URL_ROOTS.
        """
        if not url:
            return None

        parsed = urlparse(url)
        if parsed.scheme == 'file':
            candidate = Path(unquote(parsed.path))
            return candidate if candidate.is_file() else None

        if parsed.scheme not in ('http', 'https') and not url.startswith('//'):
            candidate = Path(url)
            if candidate.is_file():
                return candidate

        path = unquote(parsed.path)
        for prefix, root in self.config.local_url_roots.items():
            if not prefix:
                continue
            prefix_path = urlparse(prefix).path or prefix
            if path.startswith(prefix_path):
                relative = path[len(prefix_path):].lstrip('/')
                candidate = Path(root) / relative
                if not candidate.resolve().is_relative_to(Path(root).resolve()):
                    logger.warning(f"Ignoring {url}: resolves outside {root}")
                    continue
                if candidate.is_file():
                    return candidate
        return None

    # ------------------------------------------------------------------
    # Remote sources
    # ------------------------------------------------------------------

    def download(self, url: str, dest) -> Path:
        """
        Stream a remote file into `dest`.

        An existing non-empty `dest` is reused.

        Raises:
            SourceUnavailable: On any network or filesystem failure
        """
        dest = Path(dest)
        if dest.is_file() and dest.stat().st_size > 0:
            return dest

        url = self.process_cloud_url(self.fix_url(url))
        part = dest.with_name(f"{dest.name}.part")
        logger.info(f"Downloading {url} -> {dest}")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with httpx.Client(timeout=self.config.remote_timeout, follow_redirects=True) as client:
                with client.stream('GET', url) as response:
                    response.raise_for_status()
                    with open(part, 'wb') as fh:
                        for chunk in response.iter_bytes(self.config.chunk_size):
                            fh.write(chunk)
            if part.stat().st_size == 0:
                raise SourceUnavailable(f"Empty response from {url}")
            os.replace(part, dest)
        except (httpx.HTTPError, OSError) as e:
            part.unlink(missing_ok=True)
            logger.error(f"Download failed for {url}: {e}")
            raise SourceUnavailable(f"Could not fetch {url}: {e}") from e
        except SourceUnavailable:
            part.unlink(missing_ok=True)
            raise
        return dest

    def source_cache_path(self, url: str) -> Path:
        return self.config.sources_root / demo_filename(url)

    def ensure_local(self, track) -> Path:
        """Local path of the track's bytes, downloading remote sources once."""
        path = self.local_path(track.source)
        if path is not None:
            return path
        if not self.is_remote(track.source):
            raise TrackNotFound(f"Source file missing for track {track.index}: {track.source}")
        return self.download(track.source, self.source_cache_path(track.source))
