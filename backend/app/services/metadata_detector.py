"""
Multi-strategy "now playing" detection.

Each strategy probes one kind of metadata source (ICY, HLS tags, HTTP
headers, JSON endpoints, homepage scraping, saved per-station configs).
The detector runs them in registration order, each under its own timeout,
and ranks the ones that worked by a fixed priority table.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from app.config.metadata_sources import (
    API_USER_AGENT,
    BROWSER_USER_AGENT,
    HLS_METADATA_TAGS,
    MAX_DOCUMENT_BYTES,
    METADATA_HEADER_FRAGMENTS,
    NOW_PLAYING_KEY_FRAGMENTS,
    NOW_PLAYING_KEYS,
    WEBSITE_FALSE_POSITIVE_MARKERS,
    WEBSITE_PATTERNS,
    get_json_endpoints,
    get_strategy_priority,
)
from app.config.settings import MetadataSettings, get_settings
from app.models import Confidence, DetectionReport, StationHints, StrategyResult
from app.services.metadata_cache import MetadataCache

logger = logging.getLogger(__name__)

_TAG = re.compile(r"<[^>]*>")
_NO_ALNUM = re.compile(r"^[^a-zA-Z0-9]*$")


async def read_limited_text(response: aiohttp.ClientResponse, limit: int = MAX_DOCUMENT_BYTES) -> str:
    """Read at most `limit` bytes of a response body and decode it leniently."""
    buf = bytearray()
    async for chunk in response.content.iter_chunked(8192):
        buf.extend(chunk)
        if len(buf) >= limit:
            break
    return bytes(buf[:limit]).decode(response.charset or "utf-8", errors="replace")


def extract_fields(data: Any, mappings: Dict[str, str]) -> Dict[str, Any]:
    """
    Pick values out of a JSON document using dotted paths.

    Example:
        extract_fields({"now": {"artist": "A"}}, {"artist": "now.artist"}) -> {"artist": "A"}
    """
    result: Dict[str, Any] = {}
    if not isinstance(mappings, dict):
        return result

    for key, path in mappings.items():
        if not isinstance(path, str):
            continue
        value = data
        for part in path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
                value = value[int(part)]
            else:
                value = None
            if value is None:
                break
        if value is not None:
            result[key] = value
    return result


def compose_now_playing(values: Dict[str, Any]) -> Optional[str]:
    """Build a now playing string from song/nowplaying or artist + title values."""
    for key in ("nowplaying", "now_playing", "song", "current", "track"):
        value = values.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    artist = values.get("artist")
    title = values.get("title")
    if isinstance(artist, dict):
        artist = artist.get("name")
    artist = artist.strip() if isinstance(artist, str) else ""
    title = title.strip() if isinstance(title, str) else ""
    if artist and title:
        return f"{artist} - {title}"
    return title or artist or None


def looks_like_now_playing(data: Any) -> bool:
    """Heuristic: does a JSON document look like a "now playing" payload?"""
    if not isinstance(data, dict) or not data:
        return False
    for key in NOW_PLAYING_KEYS + ["artist", "live", "playing"]:
        if data.get(key):
            return True
    return any(
        fragment in key.lower()
        for key in data.keys()
        for fragment in NOW_PLAYING_KEY_FRAGMENTS
    )


def now_playing_from_json(data: Dict[str, Any]) -> Optional[str]:
    for key in NOW_PLAYING_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            nested = compose_now_playing(value)
            if nested:
                return nested
    return compose_now_playing(data)


def is_false_positive(text: str) -> bool:
    """Reject scraped text that is really markup, script, a URL or noise."""
    if any(marker in text for marker in WEBSITE_FALSE_POSITIVE_MARKERS):
        return True
    if _NO_ALNUM.match(text):
        return True
    return len(text) < 8 or len(text) > 80


def scrape_now_playing(html: str) -> List[Tuple[str, str]]:
    """
    Apply the homepage patterns in order.

    Returns:
        (pattern, text) pairs that survived false-positive filtering, in
        pattern order then document order.
    """
    found = []
    for pattern in WEBSITE_PATTERNS:
        for match in pattern.finditer(html):
            text = (match.group(1) or "").strip()
            if len(text) <= 5 or is_false_positive(text):
                continue
            found.append((pattern.pattern, text))
    return found


def load_fields(raw: Any) -> Optional[Dict[str, Any]]:
    """Decode a saved metadata_fields value (JSON string or dict)."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed metadata field config: {raw!r}")
        return None
    return value if isinstance(value, dict) else None


class MetadataStrategy:
    """Common interface for detection strategies."""

    type = "unknown"
    description = "Metadata source"
    # None uses the detector's default strategy timeout
    timeout: Optional[float] = None
    # A working authoritative result ends a non-exhaustive detection
    authoritative = False

    def applies(self, stream_url: str, hints: StationHints) -> bool:
        return True

    async def attempt(
        self,
        stream_url: str,
        hints: StationHints,
        session: aiohttp.ClientSession,
    ) -> StrategyResult:
        raise NotImplementedError

    def failure(self, error: str, type_: Optional[str] = None) -> StrategyResult:
        return StrategyResult(
            type=type_ or self.type,
            description=self.description,
            error=error,
        )


class IcecastStrategy(MetadataStrategy):
    """ICY metadata through the shared request cache."""

    type = "icecast"
    description = "Icecast/Shoutcast stream metadata"
    authoritative = True

    def __init__(self, cache: MetadataCache, timeout: Optional[float] = None):
        self._cache = cache
        self.timeout = timeout

    def applies(self, stream_url, hints) -> bool:
        # A saved icecast config already reads this stream
        saved_icecast = (hints.metadata_api_type or "").strip() == "icecast"
        return not (saved_icecast and hints.metadata_api_url in (None, "", stream_url))

    async def attempt(self, stream_url, hints, session) -> StrategyResult:
        result = await self._cache.get_metadata(stream_url)
        if not result.has_metadata:
            return self.failure(result.error or "No Icecast metadata headers found")

        return StrategyResult(
            type=self.type,
            description=self.description,
            endpoint=stream_url,
            confidence=Confidence.HIGH,
            update_interval=30,
            now_playing=result.now_playing,
            config={
                "method": "icy-metadata",
                "metaint": result.metaint,
                "stationName": result.station_name,
                "description": result.description,
            },
        )


class HlsStrategy(MetadataStrategy):
    """Timed-metadata tags in an HLS playlist. Reports capability only."""

    type = "hls"
    description = "HLS stream metadata"

    def applies(self, stream_url, hints) -> bool:
        lowered = stream_url.lower()
        return ".m3u8" in lowered or "hls" in lowered

    async def attempt(self, stream_url, hints, session) -> StrategyResult:
        async with session.get(
            stream_url,
            headers={"User-Agent": API_USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                return self.failure(f"HTTP {response.status}")
            playlist = await read_limited_text(response)

        found = [tag for tag in HLS_METADATA_TAGS if tag in playlist]
        if not found:
            return self.failure("No metadata tags found in HLS playlist")

        logger.info(f"HLS metadata found in playlist: {', '.join(found)}")
        return StrategyResult(
            type=self.type,
            description="HLS stream with timed metadata",
            endpoint=stream_url,
            confidence=Confidence.HIGH,
            update_interval=10,
            config={
                "method": "hls-playlist",
                "hasTimedMetadata": "#EXT-X-TIMED-METADATA" in playlist,
                "hasDateRange": "#EXT-X-DATERANGE" in playlist,
                "hasProgramDateTime": "#EXT-X-PROGRAM-DATE-TIME" in playlist,
            },
        )


class HeadersStrategy(MetadataStrategy):
    """Custom HTTP response headers carrying track information."""

    type = "headers"
    description = "Custom HTTP headers with metadata"

    async def attempt(self, stream_url, hints, session) -> StrategyResult:
        async with session.head(
            stream_url,
            headers={"User-Agent": API_USER_AGENT},
            allow_redirects=True,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            custom = [
                {"key": key, "value": value}
                for key, value in response.headers.items()
                if any(fragment in key.lower() for fragment in METADATA_HEADER_FRAGMENTS)
            ]

        if not custom:
            return self.failure("No custom metadata headers found")

        now_playing = next(
            (
                h["value"] for h in custom
                if any(f in h["key"].lower() for f in ("nowplaying", "current", "song"))
            ),
            None,
        )
        logger.info(f"Custom metadata headers found: {custom}")
        return StrategyResult(
            type=self.type,
            description=self.description,
            endpoint=stream_url,
            confidence=Confidence.MEDIUM,
            update_interval=60,
            now_playing=now_playing,
            config={"method": "http-headers", "headers": custom},
        )


class JsonEndpointStrategy(MetadataStrategy):
    """Well-known "now playing" JSON endpoints on the station homepage."""

    type = "json"
    description = "JSON API endpoint with metadata"

    def __init__(self, request_timeout: float = 5.0):
        self._request_timeout = request_timeout
        # Endpoints are probed concurrently, each with its own timeout
        self.timeout = request_timeout + 1.0

    def applies(self, stream_url, hints) -> bool:
        return bool(hints.homepage)

    async def attempt(self, stream_url, hints, session) -> StrategyResult:
        try:
            urls = get_json_endpoints(hints.homepage)
        except ValueError as e:
            return self.failure(str(e))

        results = await asyncio.gather(
            *(self._probe_endpoint(session, url) for url in urls)
        )
        for url, data in zip(urls, results):
            if data is None:
                continue
            logger.info(f"JSON metadata found at {url}")
            return StrategyResult(
                type=self.type,
                description=self.description,
                endpoint=url,
                confidence=Confidence.HIGH,
                update_interval=30,
                now_playing=now_playing_from_json(data),
                config={
                    "method": "json-api",
                    "endpoint": url,
                    "dataStructure": list(data.keys()),
                },
            )

        return self.failure("No working JSON endpoints found")

    async def _probe_endpoint(
        self, session: aiohttp.ClientSession, url: str
    ) -> Optional[Dict[str, Any]]:
        try:
            async with session.get(
                url,
                headers={"Accept": "application/json", "User-Agent": API_USER_AGENT},
                timeout=aiohttp.ClientTimeout(total=self._request_timeout),
            ) as response:
                if response.status != 200:
                    return None
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"JSON endpoint {url} failed: {e}")
            return None

        return data if looks_like_now_playing(data) else None


class WebsiteScrapingStrategy(MetadataStrategy):
    """Regex scan of the station homepage for "now playing" text."""

    type = "website"
    description = "Website scraping for now playing"

    def applies(self, stream_url, hints) -> bool:
        return bool(hints.homepage)

    async def attempt(self, stream_url, hints, session) -> StrategyResult:
        async with session.get(
            hints.homepage,
            headers={"User-Agent": BROWSER_USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                return self.failure(f"HTTP {response.status}")
            page = await read_limited_text(response)

        matches = scrape_now_playing(page)
        if not matches:
            return self.failure('No "now playing" patterns found on website')

        logger.info(f"Website metadata patterns found: {matches[:3]}")
        return StrategyResult(
            type=self.type,
            description=self.description,
            endpoint=hints.homepage,
            confidence=Confidence.MEDIUM,
            update_interval=60,
            now_playing=matches[0][1],
            config={
                "method": "website-scraping",
                "patterns": [
                    {"pattern": pattern, "example": text} for pattern, text in matches[:5]
                ],
            },
        )


class ExistingConfigStrategy(MetadataStrategy):
    """Re-tests the metadata source saved on a station."""

    type = "existing"
    description = "Existing metadata configuration"

    def __init__(self, cache: MetadataCache, timeout: Optional[float] = None):
        self._icecast = IcecastStrategy(cache)
        self.timeout = timeout

    def applies(self, stream_url, hints) -> bool:
        return hints.has_saved_config

    async def attempt(self, stream_url, hints, session) -> StrategyResult:
        api_type = (hints.metadata_api_type or "").strip()
        api_url = hints.metadata_api_url
        fields = load_fields(hints.metadata_fields)
        logger.info(f"Testing existing {api_type or 'unknown'} configuration...")

        if api_type == "icecast":
            return await self._icecast.attempt(api_url or stream_url, hints, session)
        if not api_url:
            return self.failure("No API URL configured", type_=api_type or None)
        if api_type == "laut.fm":
            return await self._laut_fm(session, api_url)
        if api_type == "custom":
            return await self._custom_api(session, api_url, hints.metadata_format, fields)
        if api_type == "website":
            return await self._website_config(session, api_url, fields)
        if "playlist.php" in api_url or "radioplayer" in api_url:
            return await self._vista_radio(session, api_url)
        return await self._generic_api(session, api_url, api_type or "unknown", hints.metadata_format, fields)

    async def _laut_fm(self, session, api_url: str) -> StrategyResult:
        async with session.get(
            api_url,
            headers={"Accept": "application/json", "User-Agent": API_USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                return self.failure(f"HTTP {response.status}", type_="laut.fm")
            data = await response.json(content_type=None)

        if not isinstance(data, dict) or not (data.get("title") or data.get("artist")):
            return self.failure("No current song data available", type_="laut.fm")

        return StrategyResult(
            type="laut.fm",
            description="laut.fm streaming API",
            endpoint=api_url,
            confidence=Confidence.HIGH,
            update_interval=30,
            now_playing=compose_now_playing(
                {"artist": data.get("artist"), "title": data.get("title")}
            ),
            config={
                "method": "laut.fm-api",
                "endpoint": api_url,
                "fields": {"title": "title", "artist": "artist.name"},
            },
        )

    async def _custom_api(self, session, api_url: str, fmt: Optional[str], fields) -> StrategyResult:
        async with session.get(
            api_url,
            headers={
                "Accept": "application/json" if fmt == "json" else "text/plain",
                "User-Agent": API_USER_AGENT,
            },
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                return self.failure(f"HTTP {response.status}", type_="custom")
            if fmt == "json":
                data = await response.json(content_type=None)
            else:
                data = (await read_limited_text(response)).strip()

        mappings = (fields or {}).get("fields", fields) if fields else None
        if isinstance(data, str):
            now_playing = data[:200] or None
        else:
            now_playing = compose_now_playing(extract_fields(data, mappings or {}))
            if now_playing is None and isinstance(data, dict):
                now_playing = now_playing_from_json(data)

        return StrategyResult(
            type="custom",
            description="Custom API endpoint",
            endpoint=api_url,
            confidence=Confidence.HIGH,
            update_interval=60,
            now_playing=now_playing,
            config={
                "method": "custom-api",
                "endpoint": api_url,
                "format": fmt,
                "fields": mappings,
            },
        )

    async def _website_config(self, session, url: str, fields) -> StrategyResult:
        patterns = (fields or {}).get("patterns") or []
        if not patterns or not isinstance(patterns[0], dict) or not patterns[0].get("pattern"):
            return self.failure("No scraping patterns configured", type_="website")

        try:
            regex = re.compile(patterns[0]["pattern"], re.IGNORECASE)
        except re.error as e:
            return self.failure(f"Invalid scraping pattern: {e}", type_="website")

        async with session.get(
            url,
            headers={"User-Agent": BROWSER_USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                return self.failure(f"HTTP {response.status}", type_="website")
            page = await read_limited_text(response)

        match = regex.search(page)
        if not match:
            return self.failure("Configured patterns did not match current content", type_="website")

        text = match.group(1) if match.groups() else match.group(0)
        return StrategyResult(
            type="website",
            description="Website scraping (configured)",
            endpoint=url,
            confidence=Confidence.MEDIUM,
            update_interval=60,
            now_playing=_TAG.sub("", text or "").strip() or None,
            config=fields,
        )

    async def _vista_radio(self, session, api_url: str) -> StrategyResult:
        async with session.get(
            api_url,
            headers={"User-Agent": API_USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                return self.failure(f"HTTP {response.status}", type_="vista-radio")
            page = await read_limited_text(response)

        song = re.search(r'<span class="rb-song"><strong>([^<]+)</strong></span>', page)
        artist = re.search(r'<span class="rb-artist">([^<]+)</span>', page)
        if not (song and artist):
            return self.failure("No current song data found in HTML", type_="vista-radio")

        return StrategyResult(
            type="vista-radio",
            description="Vista Radio playlist API",
            endpoint=api_url,
            confidence=Confidence.HIGH,
            update_interval=30,
            now_playing=f"{artist.group(1).strip()} - {song.group(1).strip()}",
            config={"method": "vista-radio-html", "endpoint": api_url},
        )

    async def _generic_api(self, session, api_url: str, api_type: str, fmt, fields) -> StrategyResult:
        async with session.get(
            api_url,
            headers={"Accept": "application/json, text/plain, */*", "User-Agent": API_USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                return self.failure(f"HTTP {response.status}", type_=api_type)
            if "application/json" in response.headers.get("Content-Type", ""):
                data = await response.json(content_type=None)
            else:
                data = (await read_limited_text(response)).strip()

        if isinstance(data, dict):
            now_playing = now_playing_from_json(data)
        elif isinstance(data, str) and 0 < len(data) < 200:
            now_playing = data
        else:
            now_playing = None

        return StrategyResult(
            type=api_type,
            description=f"{api_type} API endpoint",
            endpoint=api_url,
            confidence=Confidence.MEDIUM,
            update_interval=60,
            now_playing=now_playing,
            config={
                "method": "generic-api",
                "endpoint": api_url,
                "format": fmt or "auto-detect",
                "fields": fields,
            },
        )


def default_strategies(
    cache: MetadataCache, settings: Optional[MetadataSettings] = None
) -> List[MetadataStrategy]:
    """The standard strategy list, in attempt order."""
    settings = settings or get_settings()
    icy_timeout = settings.icy_probe_timeout + settings.icy_extract_timeout + 1.0
    return [
        ExistingConfigStrategy(cache, timeout=max(icy_timeout, settings.strategy_timeout)),
        IcecastStrategy(cache, timeout=icy_timeout),
        HlsStrategy(),
        HeadersStrategy(),
        JsonEndpointStrategy(request_timeout=settings.strategy_timeout),
        WebsiteScrapingStrategy(),
    ]


class MetadataDetector:
    """Runs the registered strategies and ranks the ones that worked."""

    def __init__(
        self,
        cache: MetadataCache,
        settings: Optional[MetadataSettings] = None,
        strategies: Optional[List[MetadataStrategy]] = None,
        exhaustive: bool = False,
    ):
        settings = settings or get_settings()
        self._cache = cache
        self._default_timeout = settings.strategy_timeout
        self._strategies = strategies if strategies is not None else default_strategies(cache, settings)
        self._exhaustive = exhaustive
        self._http_session: Optional[aiohttp.ClientSession] = None

    @property
    def strategies(self) -> List[MetadataStrategy]:
        return list(self._strategies)

    def get_strategy(self, strategy_type: str) -> Optional[MetadataStrategy]:
        for strategy in self._strategies:
            if strategy.type == strategy_type:
                return strategy
        return None

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session for probing requests."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
        return self._http_session

    async def close(self):
        """Close HTTP session."""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
            self._http_session = None

    async def attempt(
        self,
        strategy: MetadataStrategy,
        stream_url: str,
        hints: Optional[StationHints] = None,
    ) -> StrategyResult:
        """Run one strategy under its timeout; every failure becomes an error result."""
        hints = hints or StationHints()
        timeout = strategy.timeout or self._default_timeout
        session = await self._get_http_session()
        try:
            return await asyncio.wait_for(
                strategy.attempt(stream_url, hints, session), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.info(f"{strategy.type} strategy timed out after {timeout:g}s")
            return strategy.failure(f"Timed out after {timeout:g}s")
        except aiohttp.ClientError as e:
            logger.info(f"{strategy.type} strategy request failed: {e}")
            return strategy.failure(str(e) or "Request failed")
        except Exception as e:
            logger.warning(f"{strategy.type} strategy failed: {e}", exc_info=True)
            return strategy.failure(str(e) or type(e).__name__)

    async def detect(
        self,
        stream_url: str,
        hints: Optional[StationHints] = None,
        exhaustive: Optional[bool] = None,
    ) -> DetectionReport:
        """
        Try every applicable strategy and rank the ones that worked.

        Args:
            stream_url: Stream to inspect.
            hints: Station homepage and saved configuration, if known.
            exhaustive: Keep going after an authoritative ICY result
                        (defaults to the detector setting).

        Raises:
            ValueError: If no stream URL is given.
        """
        if not stream_url:
            raise ValueError("Stream URL required")
        hints = hints or StationHints()
        if exhaustive is None:
            exhaustive = self._exhaustive

        logger.info(f"Detecting metadata sources for: {stream_url}")
        tested: List[StrategyResult] = []
        working: List[StrategyResult] = []

        for strategy in self._strategies:
            if not strategy.applies(stream_url, hints):
                continue
            result = await self.attempt(strategy, stream_url, hints)
            tested.append(result)
            if not result.ok:
                logger.debug(f"{result.type}: {result.error}")
                continue
            working.append(result)
            if strategy.authoritative and not exhaustive:
                break

        # sorted() is stable, so equal priorities keep attempt order
        ranked = sorted(working, key=lambda r: get_strategy_priority(r.type))
        return DetectionReport(
            success=bool(ranked),
            best=ranked[0] if ranked else None,
            working_methods=ranked,
            tested_methods=tested,
        )

    async def now_playing(
        self, stream_url: str, hints: Optional[StationHints] = None
    ) -> StrategyResult:
        """
        Current track for a player: the saved station config first, then ICY.

        Returns the first result carrying a title, else the last one tried.
        """
        if not stream_url:
            raise ValueError("Stream URL required")
        hints = hints or StationHints()

        result: Optional[StrategyResult] = None
        for strategy_type in ("existing", "icecast"):
            strategy = self.get_strategy(strategy_type)
            if strategy is None or not strategy.applies(stream_url, hints):
                continue
            result = await self.attempt(strategy, stream_url, hints)
            if result.ok and result.now_playing:
                return result

        return result or StrategyResult(
            type="icecast",
            description=IcecastStrategy.description,
            error="No metadata available for this stream",
        )
