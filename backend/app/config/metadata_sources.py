"""
Static tables for "now playing" detection: JSON endpoint paths, HTML
patterns and strategy priorities.
"""

import re
from typing import List, Pattern
from urllib.parse import urlparse

# Relative paths probed on a station homepage for "now playing" JSON
JSON_ENDPOINTS = [
    "/nowplaying.json",
    "/current.json",
    "/live.json",
    "/api/nowplaying",
    "/api/current",
    "/api/live",
    "/status.json",
    "/metadata.json",
    "/info.json",
]

# Paths tried after the domain-specific ones
JSON_ENDPOINTS_TRAILING = [
    "/player/nowplaying",
    "/player/current.json",
    "/assets/player/current",
    "/content/nowplaying",
    "/rds/api",
    "/stream/metadata",
]

# Hostname fragment -> extra endpoint paths
DOMAIN_JSON_ENDPOINTS = {
    "radiou.com": ["/assets/player/now-playing_live.php"],
    "radioplayer.vistaradio.ca": ["/content/playlist.php"],
    "goldenweststreaming.com": ["/rds/api"],
    "laut.fm": ["/api/current_song"],
}

# Top-level JSON keys that carry a "now playing" value, in lookup order
NOW_PLAYING_KEYS = ["nowplaying", "current", "song", "track", "title"]

# Key fragments that mark a JSON object as "now playing" shaped
NOW_PLAYING_KEY_FRAGMENTS = ["song", "track", "artist", "title", "playing"]

# Header name fragments that may carry track information
METADATA_HEADER_FRAGMENTS = ["song", "track", "artist", "title", "nowplaying", "current"]

# HLS playlist tags that indicate timed metadata support
HLS_METADATA_TAGS = [
    "#EXT-X-PROGRAM-DATE-TIME",
    "#EXT-X-DATERANGE",
    "#EXT-X-TIMED-METADATA",
]

# Ordered "now playing" patterns applied to station homepages
WEBSITE_PATTERNS: List[Pattern[str]] = [
    re.compile(r'"nowPlaying":\s*"([^"]{3,80})"', re.IGNORECASE),
    re.compile(r'"currentSong":\s*"([^"]{3,80})"', re.IGNORECASE),
    re.compile(r'"onAir":\s*"([^"]{3,80})"', re.IGNORECASE),
    re.compile(r'"current_track":\s*"([^"]{3,80})"', re.IGNORECASE),
    re.compile(r"now playing:?\s*([a-zA-Z0-9][^<>\n\r]{8,80}[a-zA-Z0-9])", re.IGNORECASE),
    re.compile(r"currently playing:?\s*([a-zA-Z0-9][^<>\n\r]{8,80}[a-zA-Z0-9])", re.IGNORECASE),
    re.compile(r"on air:?\s*([a-zA-Z0-9][^<>\n\r]{8,80}[a-zA-Z0-9])", re.IGNORECASE),
    re.compile(
        r'<[^>]*(?:class|id)="[^"]*(?:now-?playing|current-?song|on-?air|live-?track)[^"]*"[^>]*>'
        r"\s*([a-zA-Z0-9][^<>]{8,80}[a-zA-Z0-9])\s*</",
        re.IGNORECASE,
    ),
    re.compile(
        r'<[^>]*(?:class|id)="[^"]*(?:song|track|artist|title)[^"]*"[^>]*>'
        r"\s*([a-zA-Z0-9][^<>]{8,80}[a-zA-Z0-9])\s*</",
        re.IGNORECASE,
    ),
]

# Substrings that mark a scraped match as markup/script noise
WEBSITE_FALSE_POSITIVE_MARKERS = [
    "-->", "<!--", "<script", "</", "function(", "var ",
    ".jpg", ".png", ".gif", "class=", "id=", "http://", "https://",
]

# Lower value wins when ranking working strategies
STRATEGY_PRIORITIES = {
    "existing": 0,
    "laut.fm": 1,
    "custom": 1,
    "vista-radio": 1,
    "icecast": 2,
    "hls": 3,
    "headers": 4,
    "json": 5,
    "website": 6,
    "social": 7,
}

UNKNOWN_STRATEGY_PRIORITY = 999

# User agents for homepage/API probing (ICY requests use the configured one)
API_USER_AGENT = "Mozilla/5.0 (compatible; MetadataBot/1.0)"
BROWSER_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# Upper bound on bytes read from a playlist or homepage
MAX_DOCUMENT_BYTES = 512 * 1024


def get_strategy_priority(strategy_type: str) -> int:
    """Get the ranking priority for a strategy result type."""
    return STRATEGY_PRIORITIES.get(strategy_type, UNKNOWN_STRATEGY_PRIORITY)


def get_json_endpoints(homepage: str) -> List[str]:
    """Get the absolute JSON endpoint URLs to probe for a station homepage."""
    parsed = urlparse(homepage)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Invalid homepage URL: {homepage!r}")

    origin = f"{parsed.scheme}://{parsed.netloc}"
    hostname = (parsed.hostname or "").lower()

    paths = list(JSON_ENDPOINTS)
    for fragment, extra in DOMAIN_JSON_ENDPOINTS.items():
        if fragment in hostname:
            paths.extend(extra)
    paths.extend(JSON_ENDPOINTS_TRAILING)

    # Remove duplicates while preserving order
    seen = set()
    urls = []
    for path in paths:
        if path not in seen:
            seen.add(path)
            urls.append(origin + path)
    return urls
