"""
Unit Tests for Demo Generation
==============================
Tests cover:
- Demo file naming
- Byte truncation fallback and its monotonicity
- Transcoder path, including failure fallbacks
- Private work files per run and the failed-rename fallback
- Demo validity sniffing
- Demo deletion and purchaser file purge
- Generation lock
"""

import hashlib
import math
import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

from django.core.cache import cache
from django.test import SimpleTestCase, TestCase
from mutagen import MutagenError

from audio.conf import AudioSettings
from audio.exceptions import ProbeFailed, WriteFailed
from audio.services.demo import (
    DemoService,
    demo_filename,
    generation_lock,
    is_valid_demo,
)
from audio.services.transcoder import TranscodeResult, TranscodeStatus
from contracts.models import AudioAsset, Product


def binary_payload(size):
    """Deterministic non-text bytes."""
    return (bytes(range(256)) * (size // 256 + 1))[:size]


class FakeTranscoder:
    """Stands in for ffmpeg: reports a duration and writes `seconds` bytes."""

    def __init__(self, duration=100.0, cut_status=TranscodeStatus.OK, probe_error=False, write=True):
        self.duration = duration
        self.cut_status = cut_status
        self.probe_error = probe_error
        self.write = write
        self.cuts = []

    def probe_duration(self, source):
        if self.probe_error:
            raise ProbeFailed('no duration')
        return self.duration

    def cut(self, source, dest, seconds, watermark=None):
        self.cuts.append((str(source), str(dest), seconds, watermark))
        if self.cut_status is TranscodeStatus.OK and self.write:
            Path(dest).write_bytes(b'ID3' + b'\x00' * seconds)
        return TranscodeResult(self.cut_status, returncode=0 if self.cut_status is TranscodeStatus.OK else 1)


class InterleavedTranscoder(FakeTranscoder):
    """Lets another run finish the same demo while this one is half written."""

    def __init__(self, other_run):
        super().__init__()
        self.other_run = other_run

    def cut(self, source, dest, seconds, watermark=None):
        with open(dest, 'wb') as fh:
            fh.write(b'A' * 1000)
            fh.flush()
            self.other_run()
            fh.write(b'A' * 1000)
        return TranscodeResult(TranscodeStatus.OK, returncode=0)


class DemoFilenameTests(SimpleTestCase):
    """Tests for demo_filename."""

    def test_keeps_short_extension(self):
        url = 'https://cdn.example.com/music/song.flac'
        expected = hashlib.md5(url.encode()).hexdigest() + '.flac'
        self.assertEqual(demo_filename(url), expected)

    def test_ignores_query_string(self):
        url = 'https://cdn.example.com/song.ogg?token=abc.def'
        self.assertTrue(demo_filename(url).endswith('.ogg'))

    def test_lowercases_extension(self):
        self.assertTrue(demo_filename('/media/SONG.WAV').endswith('.wav'))

    def test_falls_back_to_mp3(self):
        self.assertTrue(demo_filename('https://drive.google.com/file/d/abc/view').endswith('.mp3'))
        self.assertTrue(demo_filename('/media/song.longext').endswith('.mp3'))
        self.assertTrue(demo_filename('/media/song').endswith('.mp3'))


class DemoServiceTests(SimpleTestCase):
    """Tests for DemoService generation paths."""

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.config = AudioSettings(demo_root=self.tmp / 'demos')
        self.source = self.tmp / 'source.wav'
        self.source.write_bytes(binary_payload(1_000_000))
        self.dest = self.config.demo_root / 'demo.wav'

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_truncation_without_transcoder(self):
        service = DemoService(self.config)

        result = service.make_demo(self.source, self.dest, 20)

        self.assertEqual(result.method, 'truncate')
        self.assertEqual(result.path, self.dest)
        self.assertEqual(self.dest.stat().st_size, 200_000)
        self.assertEqual(self.dest.read_bytes(), self.source.read_bytes()[:200_000])
        self.assertFalse(DemoService.work_path(self.dest).exists())

    def test_truncation_is_monotonic(self):
        sizes = []
        for percent in (0, 1, 10, 33, 50, 99, 100):
            dest = self.tmp / f'demo_{percent}.wav'
            written = DemoService.truncate_copy(self.source, dest, percent)
            self.assertEqual(written, dest.stat().st_size)
            self.assertEqual(written, math.floor(1_000_000 * percent / 100))
            sizes.append(written)
        self.assertEqual(sizes, sorted(sizes))
        self.assertLessEqual(sizes[-1], 1_000_000)

    def test_rejects_out_of_range_percent(self):
        service = DemoService(self.config)
        for percent in (-1, 101):
            with self.assertRaises(ValueError):
                service.make_demo(self.source, self.dest, percent)

    def test_unreadable_source_raises_write_failed(self):
        service = DemoService(self.config)
        with self.assertRaises(WriteFailed):
            service.make_demo(self.tmp / 'missing.wav', self.dest, 20)

    def test_transcoder_path(self):
        transcoder = FakeTranscoder(duration=100.0)
        service = DemoService(self.config, transcoder=transcoder)

        result = service.make_demo(self.source, self.dest, 20)

        self.assertEqual(result.method, 'transcoder')
        self.assertEqual(transcoder.cuts[0][2], 20)
        self.assertEqual(self.dest.stat().st_size, 23)

    def test_duration_is_floored(self):
        transcoder = FakeTranscoder(duration=99.9)
        DemoService(self.config, transcoder=transcoder).make_demo(self.source, self.dest, 30)
        self.assertEqual(transcoder.cuts[0][2], 29)

    def test_custom_duration_policy(self):
        transcoder = FakeTranscoder(duration=100.0)
        service = DemoService(self.config, transcoder=transcoder, duration_policy=lambda d, p: 5)

        service.make_demo(self.source, self.dest, 50)

        self.assertEqual(transcoder.cuts[0][2], 5)

    def test_watermark_is_passed_to_transcoder(self):
        transcoder = FakeTranscoder()
        DemoService(self.config, transcoder=transcoder).make_demo(
            self.source, self.dest, 20, watermark='/tmp/wm.mp3'
        )
        self.assertEqual(transcoder.cuts[0][3], '/tmp/wm.mp3')

    def test_probe_failure_falls_back_to_truncation(self):
        service = DemoService(self.config, transcoder=FakeTranscoder(probe_error=True))

        result = service.make_demo(self.source, self.dest, 10)

        self.assertEqual(result.method, 'truncate')
        self.assertEqual(self.dest.stat().st_size, 100_000)

    def test_failed_cut_falls_back_to_truncation(self):
        service = DemoService(self.config, transcoder=FakeTranscoder(cut_status=TranscodeStatus.TIMED_OUT))

        result = service.make_demo(self.source, self.dest, 10)

        self.assertEqual(result.method, 'truncate')
        self.assertEqual(self.dest.stat().st_size, 100_000)

    def test_empty_transcoder_output_falls_back_to_truncation(self):
        service = DemoService(self.config, transcoder=FakeTranscoder(write=False))

        result = service.make_demo(self.source, self.dest, 10)

        self.assertEqual(result.method, 'truncate')

    def test_writer_paths_are_unique_per_run(self):
        first = DemoService.writer_path(self.dest)
        second = DemoService.writer_path(self.dest)

        self.assertNotEqual(first, second)
        self.assertTrue(first.name.startswith('o_demo.'))
        self.assertEqual(first.suffix, '.wav')
        self.assertNotEqual(first, DemoService.work_path(self.dest))

    def test_concurrent_runs_do_not_share_work_files(self):
        other = DemoService(self.config)
        transcoder = InterleavedTranscoder(lambda: other.make_demo(self.source, self.dest, 10))
        slow = DemoService(self.config, transcoder=transcoder)

        result = slow.make_demo(self.source, self.dest, 10)

        self.assertEqual(result.path, self.dest)
        self.assertEqual(self.dest.read_bytes(), b'A' * 2000)
        self.assertEqual([p.name for p in self.config.demo_root.iterdir()], [self.dest.name])

    def test_failed_rename_parks_demo_at_work_path(self):
        real_replace = os.replace

        def replace(src, dst):
            if Path(dst) == self.dest:
                raise PermissionError('demo directory is read-only')
            return real_replace(src, dst)

        with patch('audio.services.demo.os.replace', side_effect=replace):
            result = DemoService(self.config).make_demo(self.source, self.dest, 10)

        work = DemoService.work_path(self.dest)
        self.assertFalse(result.replaced)
        self.assertEqual(result.path, work)
        self.assertEqual(work.read_bytes(), self.source.read_bytes()[:100_000])
        self.assertFalse(self.dest.exists())

    def test_wait_for_demo(self):
        service = DemoService(self.config)
        self.assertFalse(service.wait_for_demo(self.dest, 0))

        self.dest.parent.mkdir(parents=True)
        self.dest.write_bytes(binary_payload(512))

        self.assertTrue(service.wait_for_demo(self.dest, 1))

    def test_purchased_path_is_namespaced(self):
        service = DemoService(self.config)
        path = service.purchased_path('https://cdn.example.com/a.mp3', 'order-9')
        self.assertEqual(path.parent, self.config.purchased_root)
        self.assertTrue(path.name.startswith('order-9_'))

    def test_purge_purchased(self):
        service = DemoService(self.config)
        self.config.purchased_root.mkdir(parents=True)
        (self.config.purchased_root / 'x_abc.mp3').write_bytes(b'ID3')

        service.purge_purchased()

        self.assertTrue(self.config.purchased_root.is_dir())
        self.assertEqual(list(self.config.purchased_root.iterdir()), [])


class DemoValidityTests(SimpleTestCase):
    """Tests for is_valid_demo."""

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _write(self, name, content):
        path = self.tmp / name
        path.write_bytes(content)
        return path

    def test_missing_file_is_invalid(self):
        self.assertFalse(is_valid_demo(self.tmp / 'missing.mp3'))

    def test_empty_file_is_invalid(self):
        self.assertFalse(is_valid_demo(self._write('empty.mp3', b'')))

    def test_text_file_is_invalid(self):
        page = b'<html><body><h1>404 Not Found</h1><p>The file was not found.</p></body></html>\n' * 5
        self.assertFalse(is_valid_demo(self._write('error.mp3', page)))

    def test_binary_file_is_valid(self):
        self.assertTrue(is_valid_demo(self._write('demo.wav', binary_payload(4096))))

    @patch('audio.services.demo.mutagen.File')
    def test_recognised_audio_is_valid(self, mock_file):
        mock_file.return_value = MagicMock()
        self.assertTrue(is_valid_demo(self._write('demo.mp3', b'ID3' + b'abc' * 100)))

    @patch('audio.services.demo.mutagen.File', side_effect=MutagenError('no frame sync'))
    def test_unparseable_binary_is_still_valid(self, mock_file):
        self.assertTrue(is_valid_demo(self._write('demo.mp3', binary_payload(4096))))


class DemoDeletionTests(TestCase):
    """Tests for deleting product demos."""

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.config = AudioSettings(demo_root=self.tmp / 'demos')
        self.product = Product.objects.create(name='Album')
        self.other = Product.objects.create(name='Other')
        self.asset = AudioAsset.objects.create(product=self.product, index='0', name='One', file='/media/one.mp3')
        self.other_asset = AudioAsset.objects.create(product=self.other, index='0', name='Two', file='/media/two.mp3')

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_deletes_demo_and_work_files_of_product_only(self):
        service = DemoService(self.config)
        self.config.demo_root.mkdir(parents=True)
        demo = service.demo_path(self.asset.file)
        demo.write_bytes(b'ID3')
        DemoService.work_path(demo).write_bytes(b'ID3')
        stale = DemoService.writer_path(demo)
        stale.write_bytes(b'ID3')
        other_demo = service.demo_path(self.other_asset.file)
        other_demo.write_bytes(b'ID3')

        removed = service.delete_product_demos(self.product.pk)

        self.assertEqual(removed, 3)
        self.assertFalse(stale.exists())
        self.assertFalse(demo.exists())
        self.assertTrue(other_demo.exists())


class GenerationLockTests(SimpleTestCase):
    """Tests for the per-demo generation marker."""

    def tearDown(self):
        cache.clear()

    def test_second_holder_is_refused_until_release(self):
        with generation_lock('abc.mp3') as first:
            self.assertTrue(first)
            with generation_lock('abc.mp3') as second:
                self.assertFalse(second)
        with generation_lock('abc.mp3') as again:
            self.assertTrue(again)
