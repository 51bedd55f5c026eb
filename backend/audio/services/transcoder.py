"""
Transcoder Service
==================
Runs the external ffmpeg binary with an argument list, captured output and a
hard timeout, and reports a typed result instead of raising on failure.
"""

import enum
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..exceptions import ProbeFailed

logger = logging.getLogger(__name__)


DURATION_PATTERN = re.compile(r'Duration:\s*(\d{2,}):(\d{2}):(\d{2})(?:\.(\d+))?')

FORMAT_CODECS = {
    'mp3': ['-codec:a', 'libmp3lame', '-qscale:a', '2'],
    'wav': ['-codec:a', 'pcm_s16le'],
    'flac': ['-codec:a', 'flac'],
    'ogg': ['-codec:a', 'libvorbis', '-qscale:a', '5'],
}

WATERMARK_GAIN = 0.3
FADE_OUT_SECONDS = 2


class TranscodeStatus(enum.Enum):
    OK = 'ok'
    TIMED_OUT = 'timed_out'
    NON_ZERO_EXIT = 'non_zero_exit'
    FAILED_TO_START = 'failed_to_start'


@dataclass(frozen=True)
class TranscodeResult:
    """Outcome of one transcoder invocation."""

    status: TranscodeStatus
    returncode: Optional[int] = None
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.status is TranscodeStatus.OK

    def describe(self) -> str:
        if self.status is TranscodeStatus.NON_ZERO_EXIT:
            return f"exit code {self.returncode}: {self.stderr[-500:].strip()}"
        if self.stderr:
            return f"{self.status.value}: {self.stderr[-500:].strip()}"
        return self.status.value


def parse_duration(output: str) -> Optional[float]:
    """
    Extract the `Duration: HH:MM:SS.ff` token from ffmpeg diagnostics.

    Args:
        output: Combined ffmpeg stderr/stdout text

    Returns:
        Duration in seconds, or None when no token is present
    """
    match = DURATION_PATTERN.search(output or '')
    if not match:
        return None
    hours, minutes, seconds, fraction = match.groups()
    duration = int(hours) * 3600 + int(minutes) * 60 + int(seconds)
    if fraction:
        duration += float(f"0.{fraction}")
    return float(duration)


class Transcoder:
    """Thin wrapper around an ffmpeg executable."""

    def __init__(self, executable, timeout: int = 300):
        self.executable = str(executable)
        self.timeout = timeout

    def __repr__(self):
        return f"Transcoder({self.executable!r}, timeout={self.timeout})"

    @classmethod
    def resolve(cls, path: str = '', timeout: int = 300, search_path: bool = False):
        """
        Locate a usable transcoder.

        A directory resolves to `<dir>/ffmpeg`. The file must exist and be
        executable. With `search_path`, the system ffmpeg is used when no
        path is configured.

        Returns:
            Transcoder instance, or None if nothing usable was found
        """
        candidate = None
        if path:
            candidate = Path(str(path).rstrip('/\\') or str(path))
            if candidate.is_dir():
                candidate = candidate / 'ffmpeg'
        elif search_path:
            found = shutil.which('ffmpeg')
            candidate = Path(found) if found else None

        if candidate is None:
            return None
        if not candidate.is_file() or not os.access(candidate, os.X_OK):
            logger.warning(f"Transcoder not usable at {candidate}")
            return None
        return cls(candidate, timeout=timeout)

    def run(self, args) -> TranscodeResult:
        """Execute the transcoder with the given arguments."""
        command = [self.executable, *[str(arg) for arg in args]]
        logger.debug(f"Running transcoder: {command}")
        try:
            proc = subprocess.run(
                command,
                capture_output=True,
                text=True,
                errors='replace',
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Transcoder timed out after {self.timeout}s: {command}")
            stderr = e.stderr if isinstance(e.stderr, str) else ''
            return TranscodeResult(TranscodeStatus.TIMED_OUT, stderr=stderr)
        except OSError as e:
            logger.warning(f"Transcoder failed to start: {e}")
            return TranscodeResult(TranscodeStatus.FAILED_TO_START, stderr=str(e))

        if proc.returncode != 0:
            return TranscodeResult(
                TranscodeStatus.NON_ZERO_EXIT,
                returncode=proc.returncode,
                stdout=proc.stdout,
                stderr=proc.stderr,
            )
        return TranscodeResult(
            TranscodeStatus.OK,
            returncode=0,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )

    def probe_duration(self, source) -> float:
        """
        Read the duration of `source` from ffmpeg's diagnostic output.

        ffmpeg exits non-zero when no output file is given, so the exit code
        is ignored; only the presence of the duration token matters.

        Raises:
            ProbeFailed: On timeout, start failure or a missing duration token
        """
        result = self.run(['-hide_banner', '-i', source])
        if result.status in (TranscodeStatus.TIMED_OUT, TranscodeStatus.FAILED_TO_START):
            raise ProbeFailed(f"Duration probe failed for {source}: {result.describe()}")

        duration = parse_duration(f"{result.stderr}\n{result.stdout}")
        if duration is None:
            raise ProbeFailed(f"No duration found in transcoder output for {source}")
        return duration

    def cut(self, source, dest, seconds: int, watermark=None) -> TranscodeResult:
        """
        Re-encode the first `seconds` of `source` into `dest`.

        With a watermark, the watermark is looped under the track at low gain
        and the result fades out over its last two seconds.
        """
        args = ['-hide_banner', '-loglevel', 'error', '-y', '-i', source]
        if watermark:
            fade_start = max(0, int(seconds) - FADE_OUT_SECONDS)
            args += [
                '-stream_loop', '-1', '-i', watermark,
                '-filter_complex',
                (
                    f'[1:a]volume={WATERMARK_GAIN}[wm];'
                    f'[0:a][wm]amix=inputs=2:duration=first:dropout_transition=0,'
                    f'afade=t=out:st={fade_start}:d={FADE_OUT_SECONDS}[out]'
                ),
                '-map', '[out]',
            ]
        else:
            args += ['-map', '0:a']
        args += ['-vn', '-t', int(seconds), dest]
        return self.run(args)

    def convert(self, source, dest, fmt: str) -> TranscodeResult:
        """Convert `source` into `dest` using the codec for `fmt`."""
        try:
            codec = FORMAT_CODECS[fmt]
        except KeyError:
            raise ValueError(f"Unsupported target format: {fmt}") from None
        return self.run([
            '-hide_banner', '-loglevel', 'error', '-y',
            '-i', source, '-vn', *codec, dest,
        ])
