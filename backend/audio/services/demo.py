"""
Demo Service
============
Produces truncated "demo" previews of purchasable tracks.

Generation algorithm:
1. Probe the source duration with the transcoder (if one is configured)
2. Keep floor(duration * percent / 100) seconds, re-encoded, optionally
   mixed with a looping watermark that fades out over the last 2 seconds
3. On any transcoder problem, fall back to copying the first
   floor(size * percent / 100) bytes of the source (best effort: compressed
   formats may end in an undecodable frame)
4. Rename the run's own `o_` work file onto the final demo path, so
   concurrent runs never share a file and the last rename wins; if the rename
   fails the work file is parked at `o_<demo name>` and served from there
"""

import hashlib
import logging
import math
import os
import re
import shutil
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import chardet
import mutagen
from django.core.cache import cache
from django.utils.module_loading import import_string

from contracts.models import AudioAsset
from ..exceptions import ProbeFailed, TranscoderUnavailable, WriteFailed
from .transcoder import Transcoder

logger = logging.getLogger(__name__)


CHUNK_SIZE = 8192
SNIFF_SIZE = 2048
WORK_PREFIX = 'o_'
DEMO_EXTENSION_PATTERN = re.compile(r'^[a-z\d]{3,4}$', re.IGNORECASE)


def default_target_seconds(duration: float, percent: int) -> int:
    """Seconds of audio kept in a demo."""
    return int(math.floor(duration * percent / 100))


def demo_filename(url: str) -> str:
    """
    Content-addressed demo name for a source URL: md5(url) plus extension.

    The extension comes from the URL path (query string ignored) when it
    looks like a real 3-4 character extension; otherwise `.mp3`.
    """
    path = url.split('?', 1)[0].split('#', 1)[0]
    basename = path.rstrip('/').rsplit('/', 1)[-1]
    ext = basename.rsplit('.', 1)[-1].lower() if '.' in basename else ''
    if not DEMO_EXTENSION_PATTERN.match(ext):
        ext = 'mp3'
    return f"{hashlib.md5(url.encode('utf-8')).hexdigest()}.{ext}"


def looks_like_text(file_path) -> bool:
    """
    Sniff the head of a file and report whether it is text.

    Guards against error pages or partial downloads saved under an audio name.
    """
    with open(file_path, 'rb') as fh:
        sample = fh.read(SNIFF_SIZE)
    if not sample:
        return False
    if b'\x00' in sample:
        return False

    encoding = chardet.detect(sample).get('encoding')
    if not encoding:
        return False
    try:
        text = sample.decode(encoding)
    except (UnicodeDecodeError, LookupError):
        return False
    printable = sum(1 for ch in text if ch.isprintable() or ch in '\r\n\t')
    return printable / len(text) >= 0.95


def is_audio_file(file_path) -> bool:
    """
    Whether mutagen recognises the file as a known audio format.

    Truncated demos often fail to parse, so a False here is not conclusive.
    """
    try:
        return mutagen.File(str(file_path)) is not None
    except Exception as e:
        logger.debug(f"Audio parse of {file_path} failed: {e}")
        return False


def is_valid_demo(file_path) -> bool:
    """
    A demo is valid if it exists, is non-empty and is either recognised as
    audio or does not sniff as text.
    """
    path = Path(file_path)
    try:
        if not path.is_file() or path.stat().st_size == 0:
            return False
        if is_audio_file(path):
            return True
        return not looks_like_text(path)
    except OSError as e:
        logger.warning(f"Could not inspect demo {path}: {e}")
        return False


@contextmanager
def generation_lock(key: str, timeout: int = 300):
    """
    Cross-process marker so one request at a time generates a given demo.

    Yields True when this caller holds the marker. Correctness does not depend
    on it: the final rename is last-writer-wins.
    """
    lock_key = f"audio:demo-lock:{key}"
    acquired = cache.add(lock_key, os.getpid(), timeout)
    try:
        yield acquired
    finally:
        if acquired:
            cache.delete(lock_key)


@dataclass(frozen=True)
class DemoResult:
    """Where the demo ended up and how it was made."""

    path: Path
    method: str
    replaced: bool = True


class DemoService:
    """Creates, validates and deletes demo files under the demo root."""

    def __init__(self, config, transcoder=None, duration_policy=None):
        self.config = config
        self.transcoder = transcoder or Transcoder.resolve(
            config.transcoder_path,
            timeout=config.transcoder_timeout,
        )
        if duration_policy is None and config.duration_hook:
            duration_policy = import_string(config.duration_hook)
        self.duration_policy = duration_policy or default_target_seconds

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def demo_path(self, url: str) -> Path:
        return self.config.demo_root / demo_filename(url)

    def purchased_path(self, url: str, token: str) -> Path:
        """Purchaser-namespaced copy, so one buyer's file never serves another."""
        return self.config.purchased_root / f"{token}_{demo_filename(url)}"

    @staticmethod
    def work_path(dest) -> Path:
        """Fixed `o_` path a demo is parked at when it cannot replace `dest`."""
        dest = Path(dest)
        return dest.with_name(f"{WORK_PREFIX}{dest.name}")

    @staticmethod
    def writer_path(dest) -> Path:
        """Work file private to one generation run, keeping the demo extension."""
        dest = Path(dest)
        return dest.with_name(f"{WORK_PREFIX}{dest.stem}.{os.getpid()}-{uuid.uuid4().hex}{dest.suffix}")

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    @staticmethod
    def truncate_copy(source, dest, percent: int) -> int:
        """
        Copy the first floor(size * percent / 100) bytes of `source` to `dest`.

        Returns:
            Number of bytes written

        Raises:
            OSError: If the source cannot be read or the destination written
        """
        size = os.path.getsize(source)
        remaining = int(math.floor(size * percent / 100))
        written = 0
        with open(source, 'rb') as src, open(dest, 'wb') as dst:
            while remaining > 0:
                chunk = src.read(min(CHUNK_SIZE, remaining))
                if not chunk:
                    break
                dst.write(chunk)
                written += len(chunk)
                remaining -= len(chunk)
        return written

    def _transcode(self, source, work, percent: int, watermark) -> bool:
        """Try the transcoder path. Returns True if `work` holds a usable demo."""
        if self.transcoder is None:
            raise TranscoderUnavailable("No transcoder configured")

        duration = self.transcoder.probe_duration(source)
        target = int(self.duration_policy(duration, percent))
        logger.info(
            f"Cutting demo of {source}: {duration:.2f}s -> {target}s ({percent}%)"
        )

        result = self.transcoder.cut(source, work, target, watermark=watermark)
        if not result.ok:
            logger.warning(f"Transcoder demo cut failed for {source}: {result.describe()}")
            return False
        if not work.is_file() or work.stat().st_size == 0:
            logger.warning(f"Transcoder produced no output for {source}")
            return False
        return True

    def make_demo(self, source, dest, percent: int, watermark=None) -> DemoResult:
        """
        Create a demo of `source` at `dest`.

        Args:
            source: Local path of the full track
            dest: Final demo path
            percent: Share of the track to keep (0-100)
            watermark: Optional local path of an audio watermark

        Returns:
            DemoResult. `path` is the `o_` file if the demo could not be
            renamed into place.

        Raises:
            ValueError: If percent is outside 0-100
            WriteFailed: If the source is unreadable or nothing can be written
        """
        if not 0 <= percent <= 100:
            raise ValueError(f"Demo percent must be between 0 and 100, got {percent}")

        source = Path(source)
        dest = Path(dest)
        if not source.is_file() or not os.access(source, os.R_OK):
            raise WriteFailed(f"Demo source is not readable: {source}")

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WriteFailed(f"Cannot create demo directory {dest.parent}: {e}") from e

        work = self.writer_path(dest)
        method = 'transcoder'
        try:
            transcoded = self._transcode(source, work, percent, watermark)
        except (TranscoderUnavailable, ProbeFailed) as e:
            logger.info(f"Falling back to byte truncation for {source}: {e}")
            transcoded = False

        if not transcoded:
            method = 'truncate'
            try:
                written = self.truncate_copy(source, work, percent)
            except OSError as e:
                logger.error(f"Demo truncation failed for {source}: {e}")
                work.unlink(missing_ok=True)
                raise WriteFailed(f"Cannot write demo {work}: {e}") from e
            logger.info(f"Truncated {source} to {written} bytes ({percent}%)")

        try:
            os.replace(work, dest)
        except OSError as e:
            fallback = self.work_path(dest)
            logger.warning(f"Could not move {work} onto {dest}, serving {fallback.name}: {e}")
            try:
                os.replace(work, fallback)
            except OSError as park_error:
                logger.warning(f"Could not park {work} at {fallback}: {park_error}")
                return DemoResult(path=work, method=method, replaced=False)
            return DemoResult(path=fallback, method=method, replaced=False)

        return DemoResult(path=dest, method=method)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def delete_product_demos(self, product_id: int) -> int:
        """
        Delete the demo and work files of every asset of a product.

        Returns:
            Number of files removed
        """
        removed = 0
        for url in AudioAsset.objects.filter(product_id=product_id).values_list('file', flat=True):
            if not url:
                continue
            demo = self.demo_path(url)
            work_files = sorted(demo.parent.glob(f"{WORK_PREFIX}{demo.stem}.*"))
            for path in [demo, *work_files]:
                try:
                    path.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.warning(f"Could not delete demo {path}: {e}")
        logger.info(f"Deleted {removed} demo files for product {product_id}")
        return removed

    def purge_purchased(self) -> None:
        """Empty the purchaser-specific directory."""
        root = self.config.purchased_root
        if root.is_dir():
            shutil.rmtree(root, ignore_errors=True)
        root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Purged purchased files under {root}")

    def wait_for_demo(self, path, timeout: int) -> bool:
        """Poll until another worker's demo at `path` becomes valid."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if is_valid_demo(path):
                return True
            time.sleep(0.25)
        return is_valid_demo(path)
