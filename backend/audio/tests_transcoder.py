"""
Unit Tests for the Transcoder Wrapper
=====================================
Tests cover:
- Duration parsing from ffmpeg diagnostics
- Executable resolution
- Typed results for timeouts, start failures and non-zero exits
- Argument lists for demo cuts and format conversion
"""

import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import patch

from django.test import SimpleTestCase

from audio.exceptions import ProbeFailed
from audio.services.transcoder import (
    Transcoder,
    TranscodeStatus,
    parse_duration,
)


FFMPEG_BANNER = (
    "Input #0, wav, from 'song.wav':\n"
    "  Duration: 00:03:25.50, bitrate: 1411 kb/s\n"
    "  Stream #0:0: Audio: pcm_s16le, 44100 Hz, 2 channels\n"
    "At least one output file must be specified\n"
)


def completed(returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess(args=['ffmpeg'], returncode=returncode, stdout=stdout, stderr=stderr)


class ParseDurationTests(SimpleTestCase):
    """Tests for parse_duration."""

    def test_parses_hours_minutes_seconds_and_fraction(self):
        self.assertEqual(parse_duration(FFMPEG_BANNER), 205.5)

    def test_parses_whole_seconds(self):
        self.assertEqual(parse_duration("Duration: 01:00:01, start: 0"), 3601.0)

    def test_missing_token_returns_none(self):
        self.assertIsNone(parse_duration("Invalid data found when processing input"))
        self.assertIsNone(parse_duration(''))


class TranscoderResolveTests(SimpleTestCase):
    """Tests for Transcoder.resolve."""

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _make_binary(self, path, executable=True):
        path.write_text('#!/bin/sh\nexit 0\n')
        os.chmod(path, 0o755 if executable else 0o644)
        return path

    def test_executable_file_resolves(self):
        binary = self._make_binary(self.tmp / 'ffmpeg')
        transcoder = Transcoder.resolve(str(binary), timeout=12)
        self.assertIsNotNone(transcoder)
        self.assertEqual(transcoder.executable, str(binary))
        self.assertEqual(transcoder.timeout, 12)

    def test_directory_resolves_to_ffmpeg_inside(self):
        self._make_binary(self.tmp / 'ffmpeg')
        transcoder = Transcoder.resolve(str(self.tmp) + '/')
        self.assertEqual(transcoder.executable, str(self.tmp / 'ffmpeg'))

    def test_non_executable_file_is_rejected(self):
        binary = self._make_binary(self.tmp / 'ffmpeg', executable=False)
        self.assertIsNone(Transcoder.resolve(str(binary)))

    def test_missing_path_is_rejected(self):
        self.assertIsNone(Transcoder.resolve(str(self.tmp / 'nope' / 'ffmpeg')))

    def test_empty_path_without_search(self):
        self.assertIsNone(Transcoder.resolve(''))

    @patch('audio.services.transcoder.shutil.which')
    def test_empty_path_searches_system_path(self, mock_which):
        binary = self._make_binary(self.tmp / 'ffmpeg')
        mock_which.return_value = str(binary)

        transcoder = Transcoder.resolve('', search_path=True)

        mock_which.assert_called_once_with('ffmpeg')
        self.assertEqual(transcoder.executable, str(binary))


@patch('audio.services.transcoder.subprocess.run')
class TranscoderRunTests(SimpleTestCase):
    """Tests for running the transcoder."""

    def setUp(self):
        self.transcoder = Transcoder('/usr/bin/ffmpeg', timeout=5)

    def test_success(self, mock_run):
        mock_run.return_value = completed(0, stdout='done')

        result = self.transcoder.run(['-version'])

        self.assertTrue(result.ok)
        self.assertEqual(result.stdout, 'done')
        args, kwargs = mock_run.call_args
        self.assertEqual(args[0], ['/usr/bin/ffmpeg', '-version'])
        self.assertEqual(kwargs['timeout'], 5)
        self.assertTrue(kwargs['capture_output'])

    def test_non_zero_exit(self, mock_run):
        mock_run.return_value = completed(1, stderr='Unknown encoder')

        result = self.transcoder.run(['-i', 'x'])

        self.assertEqual(result.status, TranscodeStatus.NON_ZERO_EXIT)
        self.assertEqual(result.returncode, 1)
        self.assertIn('Unknown encoder', result.describe())

    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd='ffmpeg', timeout=5)

        result = self.transcoder.run(['-i', 'x'])

        self.assertEqual(result.status, TranscodeStatus.TIMED_OUT)
        self.assertFalse(result.ok)

    def test_failed_to_start(self, mock_run):
        mock_run.side_effect = FileNotFoundError('ffmpeg')

        result = self.transcoder.run(['-i', 'x'])

        self.assertEqual(result.status, TranscodeStatus.FAILED_TO_START)

    def test_probe_ignores_exit_code(self, mock_run):
        mock_run.return_value = completed(1, stderr=FFMPEG_BANNER)

        self.assertEqual(self.transcoder.probe_duration('song.wav'), 205.5)

    def test_probe_without_duration_raises(self, mock_run):
        mock_run.return_value = completed(1, stderr='song.wav: Invalid data found')

        with self.assertRaises(ProbeFailed):
            self.transcoder.probe_duration('song.wav')

    def test_probe_timeout_raises(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd='ffmpeg', timeout=5)

        with self.assertRaises(ProbeFailed):
            self.transcoder.probe_duration('song.wav')

    def test_cut_without_watermark(self, mock_run):
        mock_run.return_value = completed(0)

        self.transcoder.cut('in.wav', 'out.wav', 61)

        command = mock_run.call_args[0][0]
        self.assertIn('0:a', command)
        self.assertEqual(command[-3:], ['-t', '61', 'out.wav'])
        self.assertNotIn('-filter_complex', command)

    def test_cut_with_watermark_mixes_and_fades(self, mock_run):
        mock_run.return_value = completed(0)

        self.transcoder.cut('in.wav', 'out.wav', 30, watermark='wm.mp3')

        command = mock_run.call_args[0][0]
        self.assertIn('wm.mp3', command)
        self.assertEqual(command[command.index('-stream_loop') + 1], '-1')
        graph = command[command.index('-filter_complex') + 1]
        self.assertIn('volume=0.3', graph)
        self.assertIn('duration=first', graph)
        self.assertIn('afade=t=out:st=28:d=2', graph)

    def test_cut_shorter_than_fade_starts_at_zero(self, mock_run):
        mock_run.return_value = completed(0)

        self.transcoder.cut('in.wav', 'out.wav', 1, watermark='wm.mp3')

        graph = mock_run.call_args[0][0][mock_run.call_args[0][0].index('-filter_complex') + 1]
        self.assertIn('afade=t=out:st=0:d=2', graph)

    def test_convert_uses_format_codec(self, mock_run):
        mock_run.return_value = completed(0)

        self.transcoder.convert('in.wav', 'out.mp3', 'mp3')

        command = mock_run.call_args[0][0]
        self.assertIn('libmp3lame', command)
        self.assertEqual(command[command.index('-qscale:a') + 1], '2')
        self.assertEqual(command[-1], 'out.mp3')

    def test_convert_unknown_format(self, mock_run):
        with self.assertRaises(ValueError):
            self.transcoder.convert('in.wav', 'out.aac', 'aac')
        mock_run.assert_not_called()
