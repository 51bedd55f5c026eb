"""
Format Bundle Service
=====================
Renders every audio asset of a product into mp3, wav, flac and ogg and packs
each format into a zip for purchased delivery.

Processing algorithm:
1. Collect the product's audio assets (wav mp3 flac aiff alac ogg m4a)
2. Hash [name, file, extension] of every asset; an unchanged hash with a
   previous successful run means nothing to do
3. Wipe the product's bundle directory and recreate one folder per format
4. Copy assets already in the target format, convert the rest
5. Copy a cover image found next to the first asset into every folder
6. Zip each format that received at least one track
7. Record hash, timestamp and available formats as product metadata
"""

import hashlib
import json
import logging
import os
import re
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from django.core.exceptions import SuspiciousFileOperation
from django.utils import timezone
from django.utils.text import get_valid_filename

from contracts.models import Product
from ..exceptions import (
    ArchiveCreationFailed,
    AudioDeliveryError,
    PerFileConversionFailed,
    TranscoderError,
    TranscoderNotConfigured,
)
from .metadata import (
    AUDIO_FILES_HASH,
    AVAILABLE_FORMATS,
    BUNDLE_FILES,
    FORMATS_GENERATED_AT,
    FORMATS_WARNING,
    get_metadata_store,
)
from .resolver import Track, TrackResolver
from .transcoder import Transcoder

logger = logging.getLogger(__name__)


FORMATS = ('mp3', 'wav', 'flac', 'ogg')
ZIPS_DIR = 'zips'
COVER_PREFIXES = ('cover', 'folder')
COVER_EXTENSIONS = ('png', 'jpg', 'jpeg', 'webp')

HASH_SUFFIX_PATTERN = re.compile(r'-[a-z0-9]{6,}$', re.IGNORECASE)
REPEATED_DASHES = re.compile(r'--+')
LEADING_NUMBER = re.compile(r'^\d+')


def _tidy_name(name: str) -> str:
    name = HASH_SUFFIX_PATTERN.sub('', name)
    name = REPEATED_DASHES.sub('-', name)
    return name.strip('-_ ')


def _safe_filename(name: str, fallback: str) -> str:
    try:
        return get_valid_filename(name)
    except SuspiciousFileOperation:
        return fallback


def clean_track_name(name: str, position: int) -> str:
    """
    Output file name (without extension) for the track at `position` (0-based).

    Strips the extension and upload hash suffixes and prefixes a two-digit
    track number unless the name already starts with one.
    """
    name = re.sub(r'\.[^.]+$', '', name or '')
    name = _tidy_name(name)
    if not LEADING_NUMBER.match(name):
        name = f"{position + 1:02d} - {name}"
    return _safe_filename(name, f"{position + 1:02d}")


def matching_name(source: str) -> str:
    """Normalized stem of a source URL, used to find its bundle file."""
    stem = Path(source.split('?', 1)[0]).stem
    return _safe_filename(_tidy_name(stem), '')


@dataclass
class FormatRunResult:
    """Outcome of one bundle run for a product."""

    product_id: int
    status: str
    formats: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    files_hash: str = ''


class FormatProcessor:
    """Builds per-format bundles and archives for products."""

    def __init__(self, config, transcoder=None, store=None, resolver=None):
        self.config = config
        self._transcoder = transcoder
        self.store = store or get_metadata_store(config)
        self.resolver = resolver or TrackResolver(config)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def product_dir(self, product_id) -> Path:
        return self.config.formats_root / str(product_id)

    def format_dir(self, product_id, fmt: str) -> Path:
        return self.product_dir(product_id) / fmt

    def archive_path(self, product_id, fmt: str) -> Path:
        return self.product_dir(product_id) / ZIPS_DIR / f"{fmt}.zip"

    def find_bundle_file(self, track, formats=('mp3',)) -> Optional[Path]:
        """
        Pre-generated bundle file for a track, if one exists.

        Uses the output name recorded for the track's asset index by the last
        run. Bundles without a record are matched on the cleaned source name,
        either exactly or behind a `NN_-_` track number.
        """
        recorded = self.store.get(track.product_id, BUNDLE_FILES) or {}
        name = recorded.get(track.index)
        if name:
            for fmt in formats:
                path = self.format_dir(track.product_id, fmt) / f"{name}.{fmt}"
                if path.is_file():
                    return path
            return None

        name = matching_name(track.source)
        if not name:
            return None
        numbered = re.compile(rf'\d+_-_{re.escape(name)}')
        for fmt in formats:
            directory = self.format_dir(track.product_id, fmt)
            if not directory.is_dir():
                continue
            exact = directory / f"{name}.{fmt}"
            if exact.is_file():
                return exact
            for candidate in sorted(directory.glob(f"*.{fmt}")):
                if numbered.fullmatch(candidate.stem):
                    return candidate
        return None

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @staticmethod
    def audio_assets(product) -> list:
        return [asset for asset in product.audio_assets.all() if asset.file and asset.is_audio]

    @staticmethod
    def content_hash(assets) -> str:
        """SHA-256 over [name, file, extension] of every asset, in order."""
        identity = [[asset.name, asset.file, asset.extension] for asset in assets]
        payload = json.dumps(identity, ensure_ascii=False, separators=(',', ':'))
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    @staticmethod
    def find_cover(audio_path) -> Optional[Path]:
        """First `cover*` or `folder*` image next to an audio file."""
        if not audio_path:
            return None
        directory = Path(audio_path).parent
        if not directory.is_dir():
            return None
        for prefix in COVER_PREFIXES:
            for ext in COVER_EXTENSIONS:
                matches = sorted(
                    path for path in directory.glob(f"{prefix}*")
                    if path.is_file() and path.suffix.lower() == f".{ext}"
                )
                if matches:
                    return matches[0]
        return None

    def get_transcoder(self) -> Transcoder:
        if self._transcoder is None:
            self._transcoder = Transcoder.resolve(
                self.config.transcoder_path,
                timeout=self.config.transcoder_timeout,
                search_path=True,
            )
        if self._transcoder is None:
            raise TranscoderNotConfigured(
                "No ffmpeg found: set AUDIO_TRANSCODER_PATH or install ffmpeg"
            )
        return self._transcoder

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_product(self, product_id, force: bool = False) -> FormatRunResult:
        """
        Regenerate the format bundles of a product if its audio changed.

        Args:
            product_id: Product primary key
            force: Ignore the stored content hash

        Returns:
            FormatRunResult with status `no_audio`, `skipped` or `processed`

        Raises:
            TranscoderNotConfigured: If conversion is needed but no ffmpeg exists
        """
        product = Product.objects.filter(pk=product_id).first()
        if product is None or not product.downloadable:
            logger.info(f"Product {product_id} missing or not downloadable, no formats to build")
            return FormatRunResult(product_id=product_id, status='no_audio')

        assets = self.audio_assets(product)
        if not assets:
            logger.info(f"Product {product_id} has no audio files")
            return FormatRunResult(product_id=product_id, status='no_audio')

        files_hash = self.content_hash(assets)
        if not force:
            stored_hash = self.store.get(product_id, AUDIO_FILES_HASH)
            generated_at = self.store.get(product_id, FORMATS_GENERATED_AT)
            if stored_hash == files_hash and generated_at:
                logger.info(f"Audio of product {product_id} unchanged, skipping format generation")
                return FormatRunResult(
                    product_id=product_id,
                    status='skipped',
                    formats=list(self.store.get(product_id, AVAILABLE_FORMATS, [])),
                    files_hash=files_hash,
                )

        transcoder = self.get_transcoder()

        product_dir = self.product_dir(product_id)
        if product_dir.exists():
            shutil.rmtree(product_dir)
        for fmt in FORMATS:
            self.format_dir(product_id, fmt).mkdir(parents=True, exist_ok=True)
        (product_dir / ZIPS_DIR).mkdir(parents=True, exist_ok=True)

        logger.info(f"Generating formats for product {product_id} ({len(assets)} audio files)")

        result = FormatRunResult(product_id=product_id, status='processed', files_hash=files_hash)
        converted = {fmt: [] for fmt in FORMATS}
        bundle_files = {}
        first_local = None

        for position, asset in enumerate(assets):
            track = Track.from_asset(asset)
            try:
                source = self.resolver.ensure_local(track)
            except AudioDeliveryError as e:
                logger.warning(f"Skipping {asset.file} of product {product_id}: {e}")
                result.failures.append(PerFileConversionFailed(f"{asset.file}: {e}"))
                continue
            if first_local is None:
                first_local = source

            clean_name = clean_track_name(asset.name or Path(source).name, position)
            for fmt in FORMATS:
                output = self.format_dir(product_id, fmt) / f"{clean_name}.{fmt}"
                try:
                    self._render(transcoder, source, output, track.extension, fmt)
                except PerFileConversionFailed as e:
                    logger.warning(str(e))
                    result.failures.append(e)
                    continue
                converted[fmt].append(output)
                bundle_files[track.index] = clean_name

        cover = self.find_cover(first_local)
        covers = {}
        if cover is not None:
            cover_name = f"cover{cover.suffix.lower()}"
            for fmt in FORMATS:
                dest = self.format_dir(product_id, fmt) / cover_name
                try:
                    shutil.copyfile(cover, dest)
                except OSError as e:
                    logger.warning(f"Could not copy cover {cover} to {dest}: {e}")
                    continue
                covers[fmt] = dest
            logger.info(f"Copied cover image {cover.name} for product {product_id}")

        for fmt in FORMATS:
            if not converted[fmt]:
                continue
            members = converted[fmt] + ([covers[fmt]] if fmt in covers else [])
            try:
                self.write_archive(self.archive_path(product_id, fmt), members)
            except ArchiveCreationFailed as e:
                logger.error(str(e))
                result.failures.append(e)
                continue
            result.formats.append(fmt)

        self.store.set(product_id, AUDIO_FILES_HASH, files_hash)
        self.store.set(product_id, FORMATS_GENERATED_AT, timezone.now().isoformat())
        self.store.set(product_id, AVAILABLE_FORMATS, result.formats)
        self.store.set(product_id, BUNDLE_FILES, bundle_files)
        self.store.delete(product_id, FORMATS_WARNING)

        logger.info(
            f"Formats for product {product_id} done: {', '.join(result.formats) or 'none'} "
            f"({len(result.failures)} failures)"
        )
        return result

    @staticmethod
    def _render(transcoder, source, output, source_ext: str, fmt: str) -> None:
        """Copy or convert one asset into one format."""
        if source_ext == fmt:
            try:
                shutil.copyfile(source, output)
            except OSError as e:
                raise PerFileConversionFailed(f"Copy of {source} to {fmt} failed: {e}") from e
            return

        outcome = transcoder.convert(source, output, fmt)
        if outcome.ok and output.is_file() and output.stat().st_size > 0:
            return

        output.unlink(missing_ok=True)
        reason = outcome.describe() if not outcome.ok else 'empty output'
        raise PerFileConversionFailed(
            f"Conversion of {source} to {fmt} failed: {reason}"
        ) from TranscoderError(reason, result=outcome)

    @staticmethod
    def write_archive(zip_path, members) -> Path:
        """
        Zip `members` (flat) into `zip_path`, via a temporary name.

        Raises:
            ArchiveCreationFailed: If the archive cannot be written
        """
        zip_path = Path(zip_path)
        tmp_path = zip_path.with_name(f".{zip_path.name}.tmp")
        try:
            with zipfile.ZipFile(tmp_path, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
                for member in members:
                    archive.write(member, arcname=Path(member).name)
            os.replace(tmp_path, zip_path)
        except (OSError, zipfile.BadZipFile) as e:
            if tmp_path.exists():
                tmp_path.unlink()
            raise ArchiveCreationFailed(f"Could not write {zip_path}: {e}") from e
        return zip_path

    def clear_hash(self, product_id) -> None:
        """Forget the stored content hash so the next run rebuilds."""
        self.store.delete(product_id, AUDIO_FILES_HASH)
