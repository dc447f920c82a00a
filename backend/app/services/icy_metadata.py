"""
ICY metadata frame parsing for Shoutcast/Icecast compatible streams.

ICY metadata is an in-band signaling protocol that allows streaming servers
to send metadata (like "now playing" information) to clients alongside audio data.

Protocol:
1. Client requests metadata with header: Icy-MetaData: 1
2. Server responds with header: icy-metaint: N (bytes between metadata)
3. Every N bytes, server inserts a metadata frame:
   - 1 byte: length prefix (actual_length = byte_value * 16)
   - N bytes: metadata string padded to length
   - If no metadata: single 0x00 byte

Metadata format: StreamTitle='Artist - Song';StreamUrl='http://...';
"""

import html
import logging
import re
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)

# Largest block a single length byte can announce (255 * 16)
MAX_METADATA_LENGTH = 255 * 16

_STREAM_TITLE_START = re.compile(r"StreamTitle='", re.IGNORECASE)
# Closing quote of a value that is directly followed by another key='...' field
_NEXT_FIELD = re.compile(r"';\s*[A-Za-z_][\w.-]*='")
_FIELD = re.compile(r"([A-Za-z_][\w.-]*)='(.*?)';", re.DOTALL)


class ParserState(str, Enum):
    """Where the parser is within the repeating ICY frame."""
    AUDIO = "audio"
    LENGTH = "length"
    METADATA = "metadata"


class IcyFrameParser:
    """
    Splits an ICY stream into audio and metadata blocks.

    The stream repeats [metaint audio bytes][length byte][length * 16 metadata
    bytes]. Chunks may be of any size and never need to line up with a frame
    boundary; the parser keeps a running byte counter across calls to feed().

    Usage:
        parser = IcyFrameParser(metaint=16000)

        async for chunk in response.content.iter_any():
            for block in parser.feed(chunk):
                title = extract_stream_title(decode_metadata_block(block))
    """

    def __init__(self, metaint: int):
        """
        Initialize the ICY frame parser.

        Args:
            metaint: Number of audio bytes between metadata frames, taken
                     from the icy-metaint response header.

        Raises:
            ValueError: If metaint is not a positive integer.
        """
        if isinstance(metaint, bool) or not isinstance(metaint, int) or metaint <= 0:
            raise ValueError(f"metaint must be a positive integer, got {metaint!r}")

        self.metaint = metaint
        self._state = ParserState.AUDIO
        self._bytes_until_meta = metaint
        self._meta_remaining = 0
        self._meta_buffer = bytearray()
        self.audio_bytes = 0
        self.blocks_seen = 0

    @property
    def state(self) -> ParserState:
        return self._state

    def feed(self, data: bytes) -> List[bytes]:
        """
        Consume a chunk of the stream.

        Args:
            data: Next bytes read from the stream, of any length.

        Returns:
            Every metadata block completed within this chunk, in stream
            order. Zero-length blocks are not returned.
        """
        blocks: List[bytes] = []
        offset = 0
        size = len(data)

        while offset < size:
            if self._state is ParserState.AUDIO:
                take = min(self._bytes_until_meta, size - offset)
                offset += take
                self.audio_bytes += take
                self._bytes_until_meta -= take
                if self._bytes_until_meta == 0:
                    self._state = ParserState.LENGTH

            elif self._state is ParserState.LENGTH:
                length = data[offset] * 16
                offset += 1
                self.blocks_seen += 1
                if length == 0:
                    self._enter_audio()
                else:
                    self._meta_remaining = length
                    self._meta_buffer = bytearray()
                    self._state = ParserState.METADATA

            else:
                take = min(self._meta_remaining, size - offset)
                self._meta_buffer.extend(data[offset:offset + take])
                offset += take
                self._meta_remaining -= take
                if self._meta_remaining == 0:
                    blocks.append(bytes(self._meta_buffer))
                    self._meta_buffer = bytearray()
                    self._enter_audio()

        return blocks

    def _enter_audio(self) -> None:
        self._state = ParserState.AUDIO
        self._bytes_until_meta = self.metaint


async def iter_metadata_blocks(
    chunks: AsyncIterator[bytes], metaint: int
) -> AsyncIterator[bytes]:
    """
    Lazily yield raw metadata blocks from an async iterator of stream chunks.

    The sequence ends only when the underlying stream ends.
    """
    parser = IcyFrameParser(metaint)
    async for chunk in chunks:
        for block in parser.feed(chunk):
            yield block


def decode_metadata_block(raw: bytes) -> str:
    """Decode a metadata block to text, dropping NUL padding. Never raises."""
    stripped = raw.rstrip(b"\x00")
    try:
        return stripped.decode("utf-8")
    except UnicodeDecodeError:
        return stripped.decode("latin-1", errors="replace")


def parse_metadata_fields(text: str) -> Dict[str, str]:
    """Parse all key='value'; pairs of a metadata block."""
    fields = {key: value for key, value in _FIELD.findall(text)}
    title = extract_stream_title(text)
    if title is not None:
        fields["StreamTitle"] = title
    return fields


def extract_stream_title(text: str) -> Optional[str]:
    """
    Extract the StreamTitle value from decoded metadata text.

    Titles may contain unescaped apostrophes ("Guns N' Roses"), so the value
    does not stop at the first quote. It ends at the first "';" that is
    followed by another key='...' field, else at the last "';" in the block,
    else at a trailing quote, else at the end of the block.

    Returns:
        The HTML-entity decoded title, or None if the field is absent or empty.
    """
    if not text:
        return None

    start = _STREAM_TITLE_START.search(text)
    if not start:
        return None

    rest = text[start.end():].rstrip("\x00").rstrip()

    next_field = _NEXT_FIELD.search(rest)
    if next_field:
        value = rest[:next_field.start()]
    else:
        end = rest.rfind("';")
        if end >= 0:
            value = rest[:end]
        elif rest.endswith("'"):
            value = rest[:-1]
        else:
            value = rest

    value = html.unescape(value).strip()
    return value or None


def encode_metadata_block(title: Optional[str], url: Optional[str] = None) -> bytes:
    """
    Build a complete metadata frame (length byte + padded payload).

    Args:
        title: The StreamTitle value (e.g., "Artist - Song"); None sends an
               empty frame.
        url: Optional StreamUrl.

    Returns:
        Frame bytes ready to be placed after metaint audio bytes.
    """
    if title is None and url is None:
        return b"\x00"

    parts = [f"StreamTitle='{title or ''}'"]
    if url:
        parts.append(f"StreamUrl='{url}'")
    metadata_bytes = (";".join(parts) + ";").encode("utf-8")

    # Length byte = ceil(len / 16), actual padded length = length_byte * 16
    length_byte = (len(metadata_bytes) + 15) // 16
    if length_byte > 255:
        raise ValueError(
            f"metadata too long: {len(metadata_bytes)} bytes (max {MAX_METADATA_LENGTH})"
        )
    padded_metadata = metadata_bytes.ljust(length_byte * 16, b"\x00")

    return bytes([length_byte]) + padded_metadata
