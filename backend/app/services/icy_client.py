"""
ICY client - opens Icecast/Shoutcast streams and reads the current track.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

import aiohttp

from app.config.settings import MetadataSettings, get_settings
from app.models import MetadataResult
from app.services.icy_metadata import (
    decode_metadata_block,
    extract_stream_title,
    iter_metadata_blocks,
)

logger = logging.getLogger(__name__)


class IcyError(Exception):
    """A stream could not be opened or read."""


class ConnectionTimeout(IcyError):
    """Connecting or waiting for response headers took too long."""


class StreamClosed(IcyError):
    """The stream ended before a metadata block arrived."""


@dataclass
class IcyProbeResult:
    """What the response headers say about a stream's ICY support."""
    supports_metadata: bool
    metaint: Optional[int] = None
    station_name: Optional[str] = None
    description: Optional[str] = None
    genre: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.supports_metadata != (self.metaint is not None):
            raise ValueError("metaint must be set if and only if metadata is supported")
        if self.metaint is not None and self.metaint <= 0:
            raise ValueError(f"metaint must be positive, got {self.metaint}")


def _first_header(headers: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = headers.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def probe_from_headers(status: int, headers: Mapping[str, str]) -> IcyProbeResult:
    """
    Interpret the response status and headers of an ICY request.

    Args:
        status: HTTP status code.
        headers: Case-insensitive response headers.

    Returns:
        Probe result; a missing or invalid metaint is a normal outcome with
        supports_metadata=False and a descriptive error.
    """
    station_name = _first_header(headers, "icy-name", "ice-name")
    description = _first_header(headers, "icy-description", "ice-description")
    genre = _first_header(headers, "icy-genre", "ice-genre")

    if status != 200:
        return IcyProbeResult(
            supports_metadata=False,
            station_name=station_name,
            error=f"HTTP {status}",
        )

    raw_metaint = _first_header(headers, "icy-metaint", "ice-metaint")
    if raw_metaint is None:
        return IcyProbeResult(
            supports_metadata=False,
            station_name=station_name,
            description=description,
            genre=genre,
            error="No Icecast metadata headers found",
        )

    try:
        metaint = int(raw_metaint)
    except ValueError:
        metaint = 0
    if metaint <= 0:
        return IcyProbeResult(
            supports_metadata=False,
            station_name=station_name,
            description=description,
            genre=genre,
            error=f"Invalid icy-metaint header: {raw_metaint!r}",
        )

    return IcyProbeResult(
        supports_metadata=True,
        metaint=metaint,
        station_name=station_name,
        description=description,
        genre=genre,
    )


class IcyStream:
    """An opened stream: the probe result plus the live response, if kept."""

    def __init__(self, probe: IcyProbeResult, response: Optional[Any] = None):
        self.probe = probe
        self.response = response

    def iter_chunks(self):
        """Async iterator over body chunks as they arrive."""
        if self.response is None:
            raise StreamClosed("Stream has no open connection")
        return self.response.content.iter_any()

    def close(self) -> None:
        """Close the underlying connection. Safe to call more than once."""
        response, self.response = self.response, None
        if response is None:
            return
        try:
            response.close()
        except Exception as e:
            logger.debug(f"Error closing stream connection: {e}")


class ExtractionState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_FIRST_BLOCK = "awaiting_first_block"
    SETTLED = "settled"


class TrackExtraction:
    """
    Single-shot read of the current StreamTitle from one stream.

    Exactly one of {first metadata block, stream error, stream end, timeout,
    cancellation} settles the extraction. Settling closes the connection;
    later triggers are ignored.
    """

    def __init__(
        self,
        open_stream: Callable[[str], Awaitable[IcyStream]],
        url: str,
        timeout: float,
    ):
        self.url = url
        self._open_stream = open_stream
        self._timeout = timeout
        self._state = ExtractionState.CONNECTING
        self._stream: Optional[IcyStream] = None
        self.probe: Optional[IcyProbeResult] = None
        self.title: Optional[str] = None
        self.reason: Optional[str] = None
        self.error: Optional[str] = None

    @property
    def state(self) -> ExtractionState:
        return self._state

    async def run(self) -> Optional[str]:
        """
        Open the stream and wait for its first metadata block.

        Returns:
            The current title, or None if no title is available. Ordinary
            stream failures never raise.
        """
        if self._state is not ExtractionState.CONNECTING:
            raise RuntimeError("TrackExtraction can only be run once")

        try:
            try:
                self._stream = await self._open_stream(self.url)
            except IcyError as e:
                self.error = str(e)
                self._settle(None, "connect_failed")
                return None

            self.probe = self._stream.probe
            if not self.probe.supports_metadata:
                self.error = self.probe.error
                self._settle(None, "no_metadata")
                return None

            self._state = ExtractionState.AWAITING_FIRST_BLOCK
            try:
                title = await asyncio.wait_for(self._first_title(), timeout=self._timeout)
            except asyncio.TimeoutError:
                logger.debug(f"Track extraction timeout for {self.url}")
                self._settle(None, "timeout")
            except StreamClosed as e:
                logger.debug(f"Parser connection closed for {self.url}: {e}")
                self._settle(None, "closed")
            except (aiohttp.ClientError, OSError, IcyError) as e:
                logger.debug(f"Parser error for {self.url}: {e}")
                self.error = str(e)
                self._settle(None, "error")
            else:
                self._settle(title, "metadata")
        finally:
            # Covers cancellation from the caller
            self._settle(None, "cancelled")

        return self.title

    async def _first_title(self) -> Optional[str]:
        blocks = iter_metadata_blocks(self._stream.iter_chunks(), self.probe.metaint)
        try:
            async for block in blocks:
                title = extract_stream_title(decode_metadata_block(block))
                if title:
                    logger.info(f"Found track: {title}")
                else:
                    logger.debug("No current track (likely between songs)")
                return title
            raise StreamClosed("Stream ended before the first metadata block")
        finally:
            await blocks.aclose()

    def _settle(self, title: Optional[str], reason: str) -> bool:
        if self._state is ExtractionState.SETTLED:
            return False
        self._state = ExtractionState.SETTLED
        self.title = title
        self.reason = reason
        if self._stream is not None:
            self._stream.close()
        return True


class IcyMetadataClient:
    """Service for probing ICY streams and extracting their current track."""

    def __init__(self, settings: Optional[MetadataSettings] = None):
        settings = settings or get_settings()
        self._probe_timeout = settings.icy_probe_timeout
        self._extract_timeout = settings.icy_extract_timeout
        self._user_agent = settings.user_agent
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session for stream requests."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(auto_decompress=False)
        return self._http_session

    async def close(self):
        """Close HTTP session."""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
            self._http_session = None

    async def _request(
        self, session: aiohttp.ClientSession, url: str, timeout: float
    ) -> aiohttp.ClientResponse:
        return await session.get(
            url,
            headers={"Icy-MetaData": "1", "User-Agent": self._user_agent},
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=timeout),
        )

    async def open_stream(self, url: str, timeout: Optional[float] = None) -> IcyStream:
        """
        Send the ICY request and read the response headers only.

        The connection stays open in the returned stream when the server
        supports interleaved metadata; otherwise it is closed right away.

        Args:
            url: Stream URL.
            timeout: Seconds to wait for response headers (defaults to the
                     configured probe timeout).

        Raises:
            ConnectionTimeout: No response headers within the timeout.
            IcyError: The connection failed.
        """
        if not url:
            raise ValueError("Stream URL required")

        timeout = timeout or self._probe_timeout
        session = await self._get_http_session()
        try:
            response = await asyncio.wait_for(
                self._request(session, url, timeout), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise ConnectionTimeout(f"Timed out after {timeout:g}s waiting for {url}") from e
        except aiohttp.ClientResponseError as e:
            if "Bad status line" in e.message:
                raise IcyError(
                    "Unsupported status line: Shoutcast v1 (ICY 200 OK) servers are not supported"
                ) from e
            raise IcyError(f"Connection failed: {e}") from e
        except (aiohttp.ClientError, OSError) as e:
            raise IcyError(f"Connection failed: {e}") from e

        probe = probe_from_headers(response.status, response.headers)
        stream = IcyStream(probe, response)
        if not probe.supports_metadata:
            logger.debug(f"No ICY metadata for {url}: {probe.error}")
            stream.close()
        else:
            logger.info(
                f"Icecast metadata found - MetaInt: {probe.metaint}, Station: {probe.station_name}"
            )
        return stream

    async def probe(self, url: str, timeout: Optional[float] = None) -> IcyProbeResult:
        """Check whether a stream supports ICY metadata, without reading audio."""
        stream = await self.open_stream(url, timeout)
        stream.close()
        return stream.probe

    def create_extraction(self, url: str) -> TrackExtraction:
        return TrackExtraction(self.open_stream, url, self._extract_timeout)

    async def extract_current_track(self, url: str) -> Optional[str]:
        """Get the current StreamTitle of a stream, or None if unavailable."""
        logger.debug(f"Extracting current track from: {url}")
        return await self.create_extraction(url).run()

    async def fetch_metadata(self, url: str) -> MetadataResult:
        """Probe a stream and read its current track in one connection."""
        extraction = self.create_extraction(url)
        title = await extraction.run()

        probe = extraction.probe
        if probe is None or not probe.supports_metadata:
            return MetadataResult.failure(
                extraction.error or "No Icecast metadata headers found"
            )

        return MetadataResult(
            has_metadata=True,
            now_playing=title,
            station_name=probe.station_name,
            description=probe.description,
            metaint=probe.metaint,
        )
