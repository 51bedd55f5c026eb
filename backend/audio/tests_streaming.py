"""
Tests for Track Streaming
=========================
Tests cover:
- Range header parsing
- Track resolution and local path mapping
- Stream endpoint: demos, purchased bypass, ranges, 416, 404, 403
- Remote demo sources, concurrent generation and the failed-rename fallback
- Play notification
"""

import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from audio.conf import AudioSettings
from audio.exceptions import RangeNotSatisfiable, SourceUnavailable, TrackNotFound
from audio.services.demo import demo_filename, generation_lock
from audio.services.ranges import parse_range
from audio.services.resolver import TrackResolver
from audio.signals import play_started
from contracts.models import AudioAsset, Product


TEST_MEDIA_ROOT = Path(tempfile.mkdtemp())
PURCHASE_HEADER = 'HTTP_X_PURCHASE_TOKEN'


def header_purchase(request, product):
    """Purchase resolver for tests: the X-Purchase-Token header marks a purchase."""
    return request.META.get(PURCHASE_HEADER) or False


def binary_payload(size):
    return (bytes(range(256)) * (size // 256 + 1))[:size]


def body(response):
    return b''.join(response.streaming_content)


class ParseRangeTests(SimpleTestCase):
    """Tests for parse_range."""

    def test_no_header(self):
        self.assertIsNone(parse_range(None, 100))
        self.assertIsNone(parse_range('', 100))

    def test_closed_range(self):
        byte_range = parse_range('bytes=10-19', 100)
        self.assertEqual((byte_range.start, byte_range.end, byte_range.length), (10, 19, 10))
        self.assertEqual(byte_range.content_range, 'bytes 10-19/100')

    def test_open_range(self):
        byte_range = parse_range('bytes=90-', 100)
        self.assertEqual((byte_range.start, byte_range.end), (90, 99))

    def test_suffix_range(self):
        byte_range = parse_range('bytes=-10', 100)
        self.assertEqual((byte_range.start, byte_range.end), (90, 99))

    def test_suffix_longer_than_entity(self):
        byte_range = parse_range('bytes=-500', 100)
        self.assertEqual((byte_range.start, byte_range.end), (0, 99))

    def test_end_is_clamped(self):
        byte_range = parse_range('bytes=50-1000', 100)
        self.assertEqual(byte_range.end, 99)

    def test_start_beyond_entity(self):
        with self.assertRaises(RangeNotSatisfiable) as ctx:
            parse_range('bytes=100-', 100)
        self.assertEqual(ctx.exception.total, 100)

    def test_zero_suffix(self):
        with self.assertRaises(RangeNotSatisfiable):
            parse_range('bytes=-0', 100)

    def test_range_over_empty_entity(self):
        with self.assertRaises(RangeNotSatisfiable):
            parse_range('bytes=0-', 0)

    def test_malformed_ranges_are_ignored(self):
        for header in ('bytes=5-2', 'bytes=0-1,5-6', 'items=0-5', 'bytes=a-b', 'bytes=-', 'garbage'):
            self.assertIsNone(parse_range(header, 100), header)


class TrackResolverTests(TestCase):
    """Tests for TrackResolver."""

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.config = AudioSettings(
            demo_root=self.tmp / 'demos',
            local_url_roots={'/media/': str(self.tmp)},
        )
        self.resolver = TrackResolver(self.config)
        self.product = Product.objects.create(name='Album')
        AudioAsset.objects.create(product=self.product, index='0_42', name='First', file='/media/a.mp3', position=0)
        AudioAsset.objects.create(product=self.product, index='7_42', name='Second', file='/media/b.mp3', position=1)

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_exact_index(self):
        self.assertEqual(self.resolver.get_track(self.product, '7_42').display_name, 'Second')

    def test_positional_fallback(self):
        self.assertEqual(self.resolver.get_track(self.product, '1').display_name, 'Second')

    def test_unknown_index(self):
        with self.assertRaises(TrackNotFound):
            self.resolver.get_track(self.product, 'zzz')
        with self.assertRaises(TrackNotFound):
            self.resolver.get_track(self.product, '5')

    def test_unknown_product(self):
        with self.assertRaises(TrackNotFound):
            self.resolver.get_product(999999)

    def test_fix_url(self):
        self.assertEqual(TrackResolver.fix_url('//cdn.example.com/a.mp3'), 'https://cdn.example.com/a.mp3')
        self.assertEqual(TrackResolver.fix_url('http://x/a.mp3'), 'http://x/a.mp3')

    def test_drive_link(self):
        url = 'https://drive.google.com/file/d/1AbC-xyz/view?usp=sharing'
        self.assertEqual(
            TrackResolver.process_cloud_url(url),
            'https://drive.google.com/uc?export=download&id=1AbC-xyz',
        )

    def test_local_path_mapping(self):
        (self.tmp / 'a.mp3').write_bytes(b'ID3')
        self.assertEqual(self.resolver.local_path('/media/a.mp3'), self.tmp / 'a.mp3')
        self.assertEqual(self.resolver.local_path('https://shop.example.com/media/a.mp3'), self.tmp / 'a.mp3')
        self.assertEqual(self.resolver.local_path(f'file://{self.tmp}/a.mp3'), self.tmp / 'a.mp3')
        self.assertEqual(self.resolver.local_path(str(self.tmp / 'a.mp3')), self.tmp / 'a.mp3')
        self.assertIsNone(self.resolver.local_path('/media/missing.mp3'))
        self.assertIsNone(self.resolver.local_path('https://cdn.example.com/a.mp3'))

    def test_mapped_path_cannot_leave_its_root(self):
        media = self.tmp / 'media'
        media.mkdir()
        (self.tmp / 'secret.mp3').write_bytes(b'ID3')
        resolver = TrackResolver(AudioSettings(
            demo_root=self.tmp / 'demos',
            local_url_roots={'/media/': str(media)},
        ))

        self.assertIsNone(resolver.local_path('https://shop.example.com/media/../secret.mp3'))
        self.assertIsNone(resolver.local_path('https://shop.example.com/media/%2e%2e/secret.mp3'))

    @patch('audio.services.resolver.httpx.Client')
    def test_download_streams_into_destination(self, mock_client_cls):
        response = MagicMock()
        response.iter_bytes.return_value = [b'ID3', b'data']
        client = mock_client_cls.return_value.__enter__.return_value
        client.stream.return_value.__enter__.return_value = response

        dest = self.resolver.download('//cdn.example.com/a.mp3', self.tmp / 'cache' / 'a.mp3')

        self.assertEqual(dest.read_bytes(), b'ID3data')
        client.stream.assert_called_once_with('GET', 'https://cdn.example.com/a.mp3')
        self.assertFalse((self.tmp / 'cache' / 'a.mp3.part').exists())

    @patch('audio.services.resolver.httpx.Client')
    def test_download_failure(self, mock_client_cls):
        import httpx
        client = mock_client_cls.return_value.__enter__.return_value
        client.stream.side_effect = httpx.ConnectError('refused')

        with self.assertRaises(SourceUnavailable):
            self.resolver.download('https://cdn.example.com/a.mp3', self.tmp / 'a_cached.mp3')


@override_settings(
    MEDIA_ROOT=TEST_MEDIA_ROOT,
    AUDIO_DEMO_ROOT=TEST_MEDIA_ROOT / 'demos',
    AUDIO_FORMATS_ROOT=TEST_MEDIA_ROOT / 'formats',
    AUDIO_LOCAL_URL_ROOTS={'/media/': str(TEST_MEDIA_ROOT)},
    AUDIO_TRANSCODER_PATH='',
    AUDIO_PURCHASE_RESOLVER='audio.tests_streaming.header_purchase',
    AUDIO_REGISTERED_ONLY=False,
    AUDIO_PERSIST_DEMOS=True,
    AUDIO_PROCESS_ON_SAVE=False,
)
class StreamEndpointTests(APITestCase):
    """Tests for GET /api/stream/<product_id>/<track_index>/."""

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.source = TEST_MEDIA_ROOT / 'uploads' / 'track-one.wav'
        self.source.parent.mkdir(parents=True, exist_ok=True)
        self.content = binary_payload(1_000_000)
        self.source.write_bytes(self.content)

        self.product = Product.objects.create(id=42, name='Album', demo_percent=20)
        self.asset = AudioAsset.objects.create(
            product=self.product,
            index='0_42',
            name='Track One',
            file=str(self.source),
        )
        self.url = '/api/stream/42/0_42/'
        self.demo_path = TEST_MEDIA_ROOT / 'demos' / demo_filename(str(self.source))

    def tearDown(self):
        for name in ('demos', 'formats', 'uploads'):
            shutil.rmtree(TEST_MEDIA_ROOT / name, ignore_errors=True)

    def test_demo_then_range(self):
        """First request writes a 20% demo; a range within it returns 206."""
        response = self.client.get(self.url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['Content-Length'], '200000')
        self.assertEqual(response['Accept-Ranges'], 'bytes')
        self.assertEqual(len(body(response)), 200_000)
        self.assertEqual(self.demo_path.stat().st_size, 200_000)

        response = self.client.get(self.url, HTTP_RANGE='bytes=100000-149999')

        self.assertEqual(response.status_code, status.HTTP_206_PARTIAL_CONTENT)
        self.assertEqual(response['Content-Range'], 'bytes 100000-149999/200000')
        self.assertEqual(response['Content-Length'], '50000')
        self.assertEqual(body(response), self.content[100_000:150_000])

    def test_range_outside_demo_is_416(self):
        response = self.client.get(self.url, HTTP_RANGE='bytes=200000-')

        self.assertEqual(response.status_code, status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE)
        self.assertEqual(response['Content-Range'], 'bytes */200000')
        self.assertIn('error', response.json())

    def test_malformed_range_returns_full_entity(self):
        response = self.client.get(self.url, HTTP_RANGE='bytes=9-3')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(body(response)), 200_000)

    def test_audio_accept_header_is_not_rejected(self):
        response = self.client.get(self.url, HTTP_ACCEPT='audio/*')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body(response)

    def test_purchased_gets_full_file_and_no_demo(self):
        response = self.client.get(self.url, **{PURCHASE_HEADER: 'order-1'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(body(response), self.content)
        self.assertFalse(self.demo_path.exists())

    def test_purchased_prefers_bundle_file(self):
        bundle = TEST_MEDIA_ROOT / 'formats' / '42' / 'mp3' / '01_-_track-one.mp3'
        bundle.parent.mkdir(parents=True)
        bundle.write_bytes(b'ID3-bundle')

        response = self.client.get(self.url, **{PURCHASE_HEADER: 'order-1'})

        self.assertEqual(body(response), b'ID3-bundle')
        self.assertEqual(response['Content-Type'], 'audio/mpeg')

    def test_purchased_remote_source_redirects(self):
        self.asset.file = '//cdn.example.com/track.mp3'
        self.asset.save()

        response = self.client.get(self.url, **{PURCHASE_HEADER: 'order-1'})

        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertEqual(response['Location'], 'https://cdn.example.com/track.mp3')

    def test_secure_demo_disabled_streams_full_file(self):
        self.product.secure_demo = False
        self.product.save()

        response = self.client.get(self.url)

        self.assertEqual(len(body(response)), 1_000_000)
        self.assertFalse(self.demo_path.exists())

    def test_existing_valid_demo_is_reused(self):
        self.demo_path.parent.mkdir(parents=True, exist_ok=True)
        self.demo_path.write_bytes(b'ID3' + b'\x00' * 97)

        response = self.client.get(self.url)

        self.assertEqual(response['Content-Length'], '100')
        body(response)

    def test_text_demo_is_regenerated(self):
        self.demo_path.parent.mkdir(parents=True, exist_ok=True)
        self.demo_path.write_bytes(b'<html>error page from the storage provider</html>\n' * 10)

        response = self.client.get(self.url)

        self.assertEqual(len(body(response)), 200_000)

    @override_settings(AUDIO_PERSIST_DEMOS=False)
    def test_bounded_demo_without_persisting(self):
        response = self.client.get(self.url, HTTP_RANGE='bytes=-1000')

        self.assertEqual(response.status_code, status.HTTP_206_PARTIAL_CONTENT)
        self.assertEqual(response['Content-Range'], 'bytes 199000-199999/200000')
        self.assertEqual(body(response), self.content[199_000:200_000])
        self.assertFalse(self.demo_path.exists())

    def test_unknown_track_is_404(self):
        response = self.client.get('/api/stream/42/nope/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertIn('error', response.json())

    def test_unknown_product_is_404(self):
        response = self.client.get('/api/stream/4242/0/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_missing_source_file_is_404(self):
        self.source.unlink()
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    @override_settings(AUDIO_REGISTERED_ONLY=True)
    def test_registered_only_rejects_anonymous(self):
        response = self.client.get(self.url)

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertFalse(self.demo_path.exists())

    @override_settings(AUDIO_REGISTERED_ONLY=True)
    def test_registered_only_allows_users(self):
        user = get_user_model().objects.create_user(username='listener', password='secret-pass')
        self.client.force_authenticate(user=user)

        response = self.client.get(self.url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body(response)

    def test_play_started_is_sent(self):
        received = []

        def listener(sender, **kwargs):
            received.append(kwargs)

        play_started.connect(listener)
        try:
            response = self.client.get(self.url)
            body(response)
        finally:
            play_started.disconnect(listener)

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0]['product_id'], 42)
        self.assertEqual(received[0]['url'], str(self.source))

    def test_failing_listener_does_not_break_stream(self):
        def broken(sender, **kwargs):
            raise RuntimeError('analytics down')

        play_started.connect(broken)
        try:
            response = self.client.get(self.url)
        finally:
            play_started.disconnect(broken)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body(response)

    def test_seek_is_not_counted_as_play(self):
        received = []

        def listener(sender, **kwargs):
            received.append(kwargs)

        play_started.connect(listener)
        try:
            body(self.client.get(self.url, HTTP_RANGE='bytes=0-'))
            body(self.client.get(self.url, HTTP_RANGE='bytes=100000-'))
        finally:
            play_started.disconnect(listener)

        self.assertEqual(len(received), 1)

    def test_failed_rename_serves_parked_demo(self):
        real_replace = os.replace

        def replace(src, dst):
            if Path(dst) == self.demo_path:
                raise PermissionError('demo directory is read-only')
            return real_replace(src, dst)

        with patch('audio.services.demo.os.replace', side_effect=replace):
            response = self.client.get(self.url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(body(response), self.content[:200_000])
        self.assertFalse(self.demo_path.exists())
        self.assertTrue((self.demo_path.parent / f'o_{self.demo_path.name}').is_file())

    @patch('audio.services.resolver.httpx.Client')
    def test_remote_source_is_downloaded_once_for_demo(self, mock_client_cls):
        remote = 'https://cdn.example.com/remote-track.wav'
        self.asset.file = remote
        self.asset.save()
        download = MagicMock()
        download.iter_bytes.return_value = [self.content[:500_000], self.content[500_000:]]
        client = mock_client_cls.return_value.__enter__.return_value
        client.stream.return_value.__enter__.return_value = download

        first = self.client.get(self.url)
        second = self.client.get(self.url)

        self.assertEqual(body(first), self.content[:200_000])
        self.assertEqual(body(second), self.content[:200_000])
        client.stream.assert_called_once_with('GET', remote)
        cached = TEST_MEDIA_ROOT / 'demos' / 'sources' / demo_filename(remote)
        self.assertEqual(cached.read_bytes(), self.content)
        self.assertEqual((TEST_MEDIA_ROOT / 'demos' / demo_filename(remote)).stat().st_size, 200_000)

    @override_settings(AUDIO_DEMO_LOCK_WAIT=5)
    def test_waits_for_demo_generated_elsewhere(self):
        elsewhere = binary_payload(1234)

        def finish_elsewhere(path, timeout):
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            Path(path).write_bytes(elsewhere)
            return True

        with generation_lock(self.demo_path.name):
            with patch('audio.services.streaming.DemoService.wait_for_demo', side_effect=finish_elsewhere) as mock_wait:
                with patch('audio.services.streaming.DemoService.make_demo') as mock_make:
                    response = self.client.get(self.url)

        self.assertEqual(body(response), elsewhere)
        mock_wait.assert_called_once_with(self.demo_path, 5)
        mock_make.assert_not_called()

    @override_settings(AUDIO_DEMO_LOCK_WAIT=0)
    def test_generates_anyway_when_wait_runs_out(self):
        with generation_lock(self.demo_path.name):
            response = self.client.get(self.url)

        self.assertEqual(len(body(response)), 200_000)
        self.assertEqual(self.demo_path.stat().st_size, 200_000)
