"""
Tests for Format Bundles
========================
Tests cover:
- Clean output names
- Full bundle run with cover image and archives
- Skipping unchanged products and rebuilding changed ones
- Missing transcoder
- Per-file conversion failures
- Download and formats endpoints
"""

import shutil
import tempfile
import zipfile
from pathlib import Path
from unittest.mock import patch

from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from audio.conf import AudioSettings
from audio.exceptions import PerFileConversionFailed, TranscoderNotConfigured
from audio.services.formats import FORMATS, FormatProcessor, clean_track_name, matching_name
from audio.services.metadata import (
    AUDIO_FILES_HASH,
    AVAILABLE_FORMATS,
    BUNDLE_FILES,
    FORMATS_GENERATED_AT,
    FORMATS_WARNING,
    ModelMetadataStore,
)
from audio.services.resolver import Track
from audio.services.transcoder import TranscodeResult, TranscodeStatus
from contracts.models import AudioAsset, Product


TEST_MEDIA_ROOT = Path(tempfile.mkdtemp())


class FakeConverter:
    """Writes a small marker file for every conversion."""

    def __init__(self, fail_formats=()):
        self.fail_formats = set(fail_formats)
        self.calls = []

    def convert(self, source, dest, fmt):
        self.calls.append((str(source), str(dest), fmt))
        if fmt in self.fail_formats:
            return TranscodeResult(TranscodeStatus.NON_ZERO_EXIT, returncode=1, stderr='encoder missing')
        Path(dest).write_bytes(f'{fmt}:{Path(source).name}'.encode())
        return TranscodeResult(TranscodeStatus.OK, returncode=0)


class CleanTrackNameTests(SimpleTestCase):
    """Tests for output file names."""

    def test_prefixes_track_number(self):
        self.assertEqual(clean_track_name('Intro.wav', 0), '01_-_Intro')

    def test_keeps_existing_number(self):
        self.assertEqual(clean_track_name('03 Sunrise.flac', 4), '03_Sunrise')

    def test_strips_upload_hash_and_dashes(self):
        self.assertEqual(clean_track_name('Night--Drive-a1b2c3d4.mp3', 1), '02_-_Night-Drive')

    def test_matching_name_ignores_query(self):
        self.assertEqual(matching_name('https://cdn.example.com/night--drive.mp3?sig=1'), 'night-drive')


class FormatProcessorTests(TestCase):
    """Tests for FormatProcessor.process_product."""

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.config = AudioSettings(
            demo_root=self.tmp / 'demos',
            formats_root=self.tmp / 'formats',
            local_url_roots={'/media/': str(self.tmp)},
        )
        self.album = self.tmp / 'album'
        self.album.mkdir()
        self.source = self.album / 'song.wav'
        self.source.write_bytes(b'RIFF' + b'\x00' * 2048)
        (self.album / 'cover.jpg').write_bytes(b'\xff\xd8\xff cover')

        self.product = Product.objects.create(id=7, name='Seven')
        self.asset = AudioAsset.objects.create(
            product=self.product,
            index='0',
            name='Song',
            file=str(self.source),
        )
        self.store = ModelMetadataStore()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _processor(self, converter=None):
        return FormatProcessor(self.config, transcoder=converter or FakeConverter(), store=self.store)

    def test_builds_all_formats_with_cover(self):
        result = self._processor().process_product(7)

        self.assertEqual(result.status, 'processed')
        self.assertEqual(result.formats, ['mp3', 'wav', 'flac', 'ogg'])
        product_dir = self.config.formats_root / '7'
        for fmt in FORMATS:
            files = sorted(p.name for p in (product_dir / fmt).iterdir())
            self.assertEqual(files, sorted([f'01_-_Song.{fmt}', 'cover.jpg']))
            archive = product_dir / 'zips' / f'{fmt}.zip'
            self.assertGreater(archive.stat().st_size, 0)
            with zipfile.ZipFile(archive) as zf:
                self.assertEqual(sorted(zf.namelist()), sorted([f'01_-_Song.{fmt}', 'cover.jpg']))

        self.assertEqual(self.store.get(7, AVAILABLE_FORMATS), ['mp3', 'wav', 'flac', 'ogg'])
        self.assertTrue(self.store.get(7, FORMATS_GENERATED_AT))
        self.assertEqual(len(self.store.get(7, AUDIO_FILES_HASH)), 64)

    def test_native_format_is_copied_not_converted(self):
        converter = FakeConverter()
        self._processor(converter).process_product(7)

        self.assertEqual(sorted(call[2] for call in converter.calls), ['flac', 'mp3', 'ogg'])
        copied = self.config.formats_root / '7' / 'wav' / '01_-_Song.wav'
        self.assertEqual(copied.read_bytes(), self.source.read_bytes())

    def test_second_run_is_skipped(self):
        self._processor().process_product(7)
        archive = self.config.formats_root / '7' / 'zips' / 'mp3.zip'
        mtime = archive.stat().st_mtime_ns

        converter = FakeConverter()
        result = self._processor(converter).process_product(7)

        self.assertEqual(result.status, 'skipped')
        self.assertEqual(converter.calls, [])
        self.assertEqual(archive.stat().st_mtime_ns, mtime)

    def test_changed_assets_are_rebuilt(self):
        self._processor().process_product(7)
        old_hash = self.store.get(7, AUDIO_FILES_HASH)

        self.asset.name = 'Song (Remastered)'
        self.asset.save()
        result = self._processor().process_product(7)

        self.assertEqual(result.status, 'processed')
        self.assertNotEqual(self.store.get(7, AUDIO_FILES_HASH), old_hash)
        mp3_files = [p.name for p in (self.config.formats_root / '7' / 'mp3').iterdir()]
        self.assertIn('01_-_Song_Remastered.mp3', mp3_files)
        self.assertNotIn('01_-_Song.mp3', mp3_files)

    def test_changed_file_is_rebuilt(self):
        self._processor().process_product(7)

        other = self.album / 'song.flac'
        other.write_bytes(b'fLaC' + b'\x00' * 512)
        self.asset.file = str(other)
        self.asset.save()
        converter = FakeConverter()
        result = self._processor(converter).process_product(7)

        self.assertEqual(result.status, 'processed')
        self.assertEqual(sorted(call[2] for call in converter.calls), ['mp3', 'ogg', 'wav'])
        copied = self.config.formats_root / '7' / 'flac' / '01_-_Song.flac'
        self.assertEqual(copied.read_bytes(), other.read_bytes())

    def test_unrelated_product_edit_is_skipped(self):
        self._processor().process_product(7)

        self.product.name = 'Seven (Deluxe)'
        self.product.save()
        converter = FakeConverter()
        result = self._processor(converter).process_product(7)

        self.assertEqual(result.status, 'skipped')
        self.assertEqual(converter.calls, [])

    def test_bundle_lookup_uses_recorded_names(self):
        twin = self.album / 'song-extended.wav'
        twin.write_bytes(b'RIFF' + b'\x01' * 2048)
        self.asset.name = 'song-remixed'
        self.asset.save()
        AudioAsset.objects.create(product=self.product, index='1', name='song-extended', file=str(twin))
        processor = self._processor()
        processor.process_product(7)

        second = Track(product_id=7, index='1', source=str(twin), extension='wav', display_name='song-extended')
        first = Track(product_id=7, index='0', source=str(self.source), extension='wav', display_name='song-remixed')

        self.assertEqual(processor.find_bundle_file(second).name, '02_-_song.mp3')
        self.assertEqual(processor.find_bundle_file(first).name, '01_-_song.mp3')
        self.assertEqual(self.store.get(7, BUNDLE_FILES), {'0': '01_-_song', '1': '02_-_song'})

    def test_unrecorded_bundle_lookup_needs_whole_name(self):
        mp3_dir = self.config.formats_root / '7' / 'mp3'
        mp3_dir.mkdir(parents=True)
        (mp3_dir / '01_-_banana.mp3').write_bytes(b'ID3-banana')
        (mp3_dir / '02_-_na.mp3').write_bytes(b'ID3-na')
        processor = self._processor()

        na = Track(product_id=7, index='1', source='/src/na.wav', extension='wav', display_name='na')
        ana = Track(product_id=7, index='2', source='/src/ana.wav', extension='wav', display_name='ana')

        self.assertEqual(processor.find_bundle_file(na).name, '02_-_na.mp3')
        self.assertIsNone(processor.find_bundle_file(ana))

    def test_force_rebuilds_unchanged_product(self):
        self._processor().process_product(7)
        result = self._processor().process_product(7, force=True)
        self.assertEqual(result.status, 'processed')

    def test_failed_conversion_is_omitted(self):
        result = self._processor(FakeConverter(fail_formats={'ogg'})).process_product(7)

        self.assertEqual(result.formats, ['mp3', 'wav', 'flac'])
        self.assertTrue(any(isinstance(f, PerFileConversionFailed) for f in result.failures))
        product_dir = self.config.formats_root / '7'
        self.assertFalse((product_dir / 'zips' / 'ogg.zip').exists())
        self.assertFalse((product_dir / 'ogg' / '01_-_Song.ogg').exists())
        self.assertEqual(self.store.get(7, AVAILABLE_FORMATS), ['mp3', 'wav', 'flac'])

    def test_missing_transcoder_raises_before_disk_io(self):
        processor = FormatProcessor(self.config, store=self.store)
        with patch('audio.services.formats.Transcoder.resolve', return_value=None):
            with self.assertRaises(TranscoderNotConfigured):
                processor.process_product(7)
        self.assertFalse((self.config.formats_root / '7').exists())

    def test_product_without_audio_is_noop(self):
        self.asset.file = str(self.album / 'booklet.pdf')
        self.asset.save()

        result = self._processor().process_product(7)

        self.assertEqual(result.status, 'no_audio')
        self.assertFalse((self.config.formats_root / '7').exists())

    def test_not_downloadable_is_noop(self):
        self.product.downloadable = False
        self.product.save()
        self.assertEqual(self._processor().process_product(7).status, 'no_audio')

    def test_clears_previous_warning(self):
        self.store.set(7, FORMATS_WARNING, 'No ffmpeg found')
        self._processor().process_product(7)
        self.assertIsNone(self.store.get(7, FORMATS_WARNING))


@override_settings(
    MEDIA_ROOT=TEST_MEDIA_ROOT,
    AUDIO_DEMO_ROOT=TEST_MEDIA_ROOT / 'demos',
    AUDIO_FORMATS_ROOT=TEST_MEDIA_ROOT / 'formats',
    AUDIO_PURCHASE_RESOLVER='audio.tests_streaming.header_purchase',
    AUDIO_PROCESS_ON_SAVE=False,
)
class BundleEndpointTests(APITestCase):
    """Tests for the download and formats endpoints."""

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.product = Product.objects.create(id=7, name='Seven Songs')
        archive = TEST_MEDIA_ROOT / 'formats' / '7' / 'zips' / 'flac.zip'
        archive.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive, 'w') as zf:
            zf.writestr('01_-_Song.flac', b'fLaC')
        self.archive = archive
        store = ModelMetadataStore()
        store.set(7, AVAILABLE_FORMATS, ['flac'])
        store.set(7, FORMATS_GENERATED_AT, '2026-01-01T00:00:00+00:00')

    def tearDown(self):
        shutil.rmtree(TEST_MEDIA_ROOT / 'formats', ignore_errors=True)

    def test_purchaser_downloads_archive(self):
        response = self.client.get('/api/download/7/flac/', HTTP_X_PURCHASE_TOKEN='order-7')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['Content-Type'], 'application/zip')
        self.assertIn('attachment; filename="Seven_Songs_flac.zip"', response['Content-Disposition'])
        self.assertEqual(b''.join(response.streaming_content), self.archive.read_bytes())

    def test_non_purchaser_is_forbidden(self):
        response = self.client.get('/api/download/7/flac/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_unknown_format_is_400(self):
        response = self.client.get('/api/download/7/aac/', HTTP_X_PURCHASE_TOKEN='order-7')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_missing_archive_is_404(self):
        response = self.client.get('/api/download/7/ogg/', HTTP_X_PURCHASE_TOKEN='order-7')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_formats_listing(self):
        response = self.client.get('/api/products/7/formats/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        data = response.json()
        self.assertEqual(data['available_formats'], ['flac'])
        self.assertEqual(data['formats_generated_at'], '2026-01-01T00:00:00+00:00')
        self.assertIsNone(data['formats_warning'])
        self.assertTrue(data['downloads']['flac'].endswith('/api/download/7/flac/'))
