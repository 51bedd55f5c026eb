"""
Tests for Background Tasks, Signals and Admin Commands
======================================================
Tests cover:
- Per-product de-duplication and serialisation of format runs
- Missing transcoder reported as product metadata
- Play counting and analytics forwarding
- Demo invalidation on product demo setting changes
- audio_formats management command
- Metadata store
- Purchaser file purge schedule
"""

import shutil
import tempfile
from io import StringIO
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
from celery.exceptions import Retry
from celery.schedules import crontab
from django.core.cache import cache
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings

from audio import tasks
from audio.exceptions import TranscoderNotConfigured
from audio.services import analytics
from audio.services.demo import demo_filename
from audio.services.formats import FormatRunResult
from audio.services.metadata import FORMATS_WARNING, PLAYBACK_COUNTER, ModelMetadataStore
from audio.signals import play_started
from contracts.models import AudioAsset, Product
from core.celery import setup_periodic_tasks


TEST_MEDIA_ROOT = Path(tempfile.mkdtemp())


@override_settings(
    AUDIO_DEMO_ROOT=TEST_MEDIA_ROOT / 'demos',
    AUDIO_FORMATS_ROOT=TEST_MEDIA_ROOT / 'formats',
    AUDIO_PROCESS_ON_SAVE=False,
)
class FormatTaskTests(TestCase):
    """Tests for schedule_product_formats / process_product_formats."""

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        cache.clear()
        self.product = Product.objects.create(name='Album')
        AudioAsset.objects.create(product=self.product, index='0', name='One', file='/media/one.wav')

    @patch('audio.tasks.process_product_formats.delay')
    def test_newer_schedule_supersedes_older(self, mock_delay):
        first = tasks.schedule_product_formats(self.product.pk)
        second = tasks.schedule_product_formats(self.product.pk)

        self.assertNotEqual(first, second)
        self.assertEqual(mock_delay.call_count, 2)
        mock_delay.assert_called_with(self.product.pk, second)

        with patch('audio.tasks.FormatProcessor.process_product') as mock_process:
            result = tasks.process_product_formats(self.product.pk, first)

        self.assertEqual(result['status'], 'superseded')
        mock_process.assert_not_called()

    @patch('audio.tasks.process_product_formats.delay')
    def test_current_token_runs(self, mock_delay):
        token = tasks.schedule_product_formats(self.product.pk)

        with patch('audio.tasks.FormatProcessor.process_product') as mock_process:
            mock_process.return_value = FormatRunResult(
                product_id=self.product.pk, status='processed', formats=['mp3']
            )
            result = tasks.process_product_formats(self.product.pk, token)

        self.assertEqual(result['status'], 'processed')
        self.assertEqual(result['formats'], ['mp3'])
        self.assertIsNone(cache.get(f'audio:formats:{self.product.pk}'))

    def test_run_in_progress_is_requeued(self):
        cache.add(f'audio:formats-run:{self.product.pk}', 'other-run', 60)

        with patch('audio.tasks.FormatProcessor.process_product') as mock_process:
            with self.assertRaises(Retry):
                tasks.process_product_formats(self.product.pk)

        mock_process.assert_not_called()

    def test_run_marker_is_held_during_run_and_released(self):
        run_key = f'audio:formats-run:{self.product.pk}'
        seen = []

        def process(product_id, force=False):
            seen.append(cache.get(run_key))
            return FormatRunResult(product_id=product_id, status='processed', formats=['mp3'])

        with patch('audio.tasks.FormatProcessor.process_product', side_effect=process):
            tasks.process_product_formats(self.product.pk)

        self.assertEqual(seen, ['running'])
        self.assertIsNone(cache.get(run_key))

    def test_missing_transcoder_is_stored_as_warning(self):
        with patch(
            'audio.tasks.FormatProcessor.get_transcoder',
            side_effect=TranscoderNotConfigured('No ffmpeg found'),
        ):
            result = tasks.process_product_formats(self.product.pk)

        self.assertFalse(result['success'])
        self.assertEqual(ModelMetadataStore().get(self.product.pk, FORMATS_WARNING), 'No ffmpeg found')

    @override_settings(AUDIO_PROCESS_ON_SAVE=True)
    @patch('audio.tasks.schedule_product_formats')
    def test_save_schedules_on_commit(self, mock_schedule):
        with self.captureOnCommitCallbacks(execute=True):
            self.product.name = 'Album (Deluxe)'
            self.product.save()

        mock_schedule.assert_called_with(self.product.pk)

    def test_purge_task(self):
        purchased = TEST_MEDIA_ROOT / 'demos' / 'purchased'
        purchased.mkdir(parents=True, exist_ok=True)
        (purchased / 'tok_abc.mp3').write_bytes(b'ID3')

        result = tasks.purge_purchased_files()

        self.assertTrue(result['success'])
        self.assertEqual(list(purchased.iterdir()), [])


@override_settings(
    AUDIO_DEMO_ROOT=TEST_MEDIA_ROOT / 'demos',
    AUDIO_PROCESS_ON_SAVE=False,
)
class SignalTests(TestCase):
    """Tests for play counting and demo invalidation."""

    def setUp(self):
        self.factory = RequestFactory()
        self.product = Product.objects.create(name='Album', demo_percent=30)
        self.asset = AudioAsset.objects.create(product=self.product, index='0', name='One', file='/media/one.mp3')

    def tearDown(self):
        shutil.rmtree(TEST_MEDIA_ROOT / 'demos', ignore_errors=True)

    @patch('audio.tasks.record_play.delay')
    def test_play_is_queued_after_commit(self, mock_delay):
        request = self.factory.get('/api/stream/1/0/')
        request.COOKIES['_ga'] = 'GA1.2.1234567890.1700000000'

        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            play_started.send(sender=None, product_id=self.product.pk, url=self.asset.file, request=request)
            mock_delay.assert_not_called()
            self.assertIsNone(ModelMetadataStore().get(self.product.pk, PLAYBACK_COUNTER))

        self.assertEqual(len(callbacks), 1)
        callbacks[0]()
        mock_delay.assert_called_once_with(self.product.pk, self.asset.file, '1234567890.1700000000')

    def test_record_play_increments_counter(self):
        for _ in range(3):
            result = tasks.record_play(self.product.pk, self.asset.file)

        self.assertEqual(result['plays'], 3)
        self.assertEqual(ModelMetadataStore().get(self.product.pk, PLAYBACK_COUNTER), 3)

    @override_settings(AUDIO_ANALYTICS_PROPERTY='G-TEST', AUDIO_ANALYTICS_API_SECRET='secret')
    @patch('audio.tasks.analytics.send_play_event', return_value=True)
    def test_record_play_forwards_to_analytics(self, mock_send):
        tasks.record_play(self.product.pk, self.asset.file, '1234567890.1700000000')

        mock_send.assert_called_once_with(
            'G-TEST', 'secret', '1234567890.1700000000', self.product.pk, self.asset.file
        )

    @patch('audio.tasks.analytics.send_play_event')
    def test_no_analytics_without_property(self, mock_send):
        tasks.record_play(self.product.pk, self.asset.file)
        mock_send.assert_not_called()

    def _write_demo(self):
        demo = TEST_MEDIA_ROOT / 'demos' / demo_filename(self.asset.file)
        demo.parent.mkdir(parents=True, exist_ok=True)
        demo.write_bytes(b'ID3')
        return demo

    def test_demo_percent_change_deletes_demos(self):
        demo = self._write_demo()

        self.product.demo_percent = 50
        self.product.save()

        self.assertFalse(demo.exists())

    def test_secure_demo_change_deletes_demos(self):
        demo = self._write_demo()

        self.product.secure_demo = False
        self.product.save()

        self.assertFalse(demo.exists())

    def test_unrelated_change_keeps_demos(self):
        demo = self._write_demo()

        self.product.name = 'Renamed'
        self.product.save()

        self.assertTrue(demo.exists())


class AnalyticsTests(SimpleTestCase):
    """Tests for the GA4 play event."""

    def setUp(self):
        self.factory = RequestFactory()

    def test_client_id_falls_back_to_ip(self):
        request = self.factory.get('/', REMOTE_ADDR='203.0.113.9')
        self.assertEqual(analytics.client_id_from_request(request), '203.0.113.9')

    @patch('audio.services.analytics.httpx.Client')
    def test_posts_play_event(self, mock_client_cls):
        client = mock_client_cls.return_value.__enter__.return_value

        delivered = analytics.send_play_event('G-TEST', 'secret', 'cid', 42, '/media/a.mp3')

        self.assertTrue(delivered)
        args, kwargs = client.post.call_args
        self.assertEqual(args[0], analytics.MEASUREMENT_URL)
        self.assertEqual(kwargs['params'], {'measurement_id': 'G-TEST', 'api_secret': 'secret'})
        event = kwargs['json']['events'][0]
        self.assertEqual(event['name'], 'play')
        self.assertEqual(event['params']['event_value'], 42)
        self.assertEqual(kwargs['json']['client_id'], 'cid')

    @patch('audio.services.analytics.httpx.Client')
    def test_delivery_failure_is_swallowed(self, mock_client_cls):
        client = mock_client_cls.return_value.__enter__.return_value
        client.post.side_effect = httpx.ConnectTimeout('timed out')

        self.assertFalse(analytics.send_play_event('G-TEST', 'secret', 'cid', 42, '/media/a.mp3'))


@override_settings(
    AUDIO_DEMO_ROOT=TEST_MEDIA_ROOT / 'demos',
    AUDIO_FORMATS_ROOT=TEST_MEDIA_ROOT / 'formats',
    AUDIO_PROCESS_ON_SAVE=False,
)
class AudioFormatsCommandTests(TestCase):
    """Tests for manage.py audio_formats."""

    def setUp(self):
        self.product = Product.objects.create(name='Album')
        self.asset = AudioAsset.objects.create(product=self.product, index='0', name='One', file='/media/one.mp3')

    def tearDown(self):
        shutil.rmtree(TEST_MEDIA_ROOT / 'demos', ignore_errors=True)

    def test_requires_a_target(self):
        with self.assertRaises(CommandError):
            call_command('audio_formats')

    def test_processes_selected_product(self):
        out = StringIO()
        with patch('audio.management.commands.audio_formats.FormatProcessor.process_product') as mock_process:
            mock_process.return_value = FormatRunResult(
                product_id=self.product.pk, status='processed', formats=['mp3', 'ogg']
            )
            call_command('audio_formats', '--product', str(self.product.pk), '--force', stdout=out)

        mock_process.assert_called_once_with(self.product.pk, force=True)
        self.assertIn('mp3, ogg', out.getvalue())

    def test_missing_transcoder_fails_command(self):
        with patch(
            'audio.management.commands.audio_formats.FormatProcessor.get_transcoder',
            side_effect=TranscoderNotConfigured('No ffmpeg found'),
        ):
            with self.assertRaises(CommandError):
                call_command('audio_formats', '--product', str(self.product.pk), stdout=StringIO())
        self.assertEqual(ModelMetadataStore().get(self.product.pk, FORMATS_WARNING), 'No ffmpeg found')

    def test_delete_demos(self):
        demo = TEST_MEDIA_ROOT / 'demos' / demo_filename(self.asset.file)
        demo.parent.mkdir(parents=True, exist_ok=True)
        demo.write_bytes(b'ID3')

        call_command('audio_formats', '--product', str(self.product.pk), '--delete-demos', stdout=StringIO())

        self.assertFalse(demo.exists())


class MetadataStoreTests(TestCase):
    """Tests for ModelMetadataStore."""

    def setUp(self):
        self.store = ModelMetadataStore()
        self.product = Product.objects.create(name='Album')

    def test_roundtrip_and_delete(self):
        self.assertEqual(self.store.get(self.product.pk, 'missing', 'fallback'), 'fallback')
        self.store.set(self.product.pk, 'available_formats', ['mp3'])
        self.store.set(self.product.pk, 'available_formats', ['mp3', 'ogg'])
        self.assertEqual(self.store.get(self.product.pk, 'available_formats'), ['mp3', 'ogg'])
        self.store.delete(self.product.pk, 'available_formats')
        self.assertIsNone(self.store.get(self.product.pk, 'available_formats'))

    def test_increment(self):
        self.assertEqual(self.store.increment(self.product.pk, 'plays'), 1)
        self.assertEqual(self.store.increment(self.product.pk, 'plays'), 2)


class PeriodicTaskTests(SimpleTestCase):
    """Tests for the purchaser file purge schedule."""

    def test_daily_purge_is_scheduled(self):
        sender = MagicMock()

        setup_periodic_tasks(sender)

        sender.signature.assert_called_once_with('audio.tasks.purge_purchased_files')
        schedule, signature = sender.add_periodic_task.call_args.args
        self.assertEqual(schedule, crontab(hour=3, minute=0))
        self.assertIs(signature, sender.signature.return_value)

    @override_settings(AUDIO_RESET_PURCHASED_INTERVAL='never')
    def test_other_interval_schedules_nothing(self):
        sender = MagicMock()

        setup_periodic_tasks(sender)

        sender.add_periodic_task.assert_not_called()
