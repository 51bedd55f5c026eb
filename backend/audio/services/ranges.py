"""
Byte-range parsing and streamed file responses.

Only single ranges are honoured. Anything malformed is ignored and the whole
entity is sent, which is what RFC 7233 asks of a server that cannot parse
the header.
"""

import logging
import mimetypes
import os
import re
from dataclasses import dataclass
from typing import Optional

from django.http import StreamingHttpResponse

from ..exceptions import RangeNotSatisfiable

logger = logging.getLogger(__name__)


RANGE_PATTERN = re.compile(r'^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$', re.IGNORECASE)

AUDIO_CONTENT_TYPES = {
    'mp3': 'audio/mpeg',
    'wav': 'audio/wav',
    'flac': 'audio/flac',
    'ogg': 'audio/ogg',
    'oga': 'audio/ogg',
    'm4a': 'audio/mp4',
    'alac': 'audio/mp4',
    'aiff': 'audio/aiff',
    'aif': 'audio/aiff',
    'm3u8': 'application/vnd.apple.mpegurl',
    'm3u': 'audio/x-mpegurl',
    'zip': 'application/zip',
}


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range within an entity of `total` bytes."""

    start: int
    end: int
    total: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total}"


def parse_range(header: Optional[str], total: int) -> Optional[ByteRange]:
    """
    Parse a Range header against an entity size.

    Args:
        header: Raw Range header value, or None
        total: Entity size in bytes

    Returns:
        ByteRange to serve, or None to serve the whole entity

    Raises:
        RangeNotSatisfiable: If a well-formed range falls outside the entity
    """
    if not header:
        return None

    match = RANGE_PATTERN.match(header)
    if not match:
        # Multiple ranges, other units or garbage
        logger.debug(f"Ignoring unsupported Range header: {header!r}")
        return None

    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        suffix = int(last)
        if suffix == 0 or total == 0:
            raise RangeNotSatisfiable(total)
        start = max(0, total - suffix)
        return ByteRange(start=start, end=total - 1, total=total)

    start = int(first)
    end = int(last) if last else total - 1
    if last and start > end:
        return None
    if start >= total:
        raise RangeNotSatisfiable(total)
    return ByteRange(start=start, end=min(end, total - 1), total=total)


def guess_content_type(filename: str) -> str:
    ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
    if ext in AUDIO_CONTENT_TYPES:
        return AUDIO_CONTENT_TYPES[ext]
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or 'application/octet-stream'


def iter_file(fh, offset: int, length: int, chunk_size: int):
    """Yield `length` bytes of an open file starting at `offset`, then close it."""
    try:
        fh.seek(offset)
        remaining = length
        while remaining > 0:
            chunk = fh.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    finally:
        fh.close()


def file_response(path, range_header=None, *, filename=None, limit=None,
                  chunk_size=8192, disposition='inline', content_type=None):
    """
    Build a streamed response for a file on disk.

    Args:
        path: File to send
        range_header: Raw Range header value
        filename: Name for Content-Disposition (defaults to the file name)
        limit: Serve only the first `limit` bytes as the whole entity
        chunk_size: Read size of the body generator
        disposition: `inline` or `attachment`
        content_type: Overrides the guessed type

    Raises:
        OSError: If the file cannot be opened
        RangeNotSatisfiable: If the range falls outside the entity
    """
    size = os.path.getsize(path)
    total = size if limit is None else max(0, min(size, limit))
    byte_range = parse_range(range_header, total)

    # Open before any header is committed so I/O errors surface to the view
    fh = open(path, 'rb')

    filename = (filename or os.path.basename(path)).replace('"', '')
    if byte_range is None:
        offset, length, status = 0, total, 200
    else:
        offset, length, status = byte_range.start, byte_range.length, 206

    response = StreamingHttpResponse(
        iter_file(fh, offset, length, chunk_size),
        status=status,
        content_type=content_type or guess_content_type(filename),
    )
    response['Content-Length'] = str(length)
    response['Accept-Ranges'] = 'bytes'
    response['Cache-Control'] = 'no-cache'
    response['Content-Disposition'] = f'{disposition}; filename="{filename}"'
    if byte_range is not None:
        response['Content-Range'] = byte_range.content_range
    return response
