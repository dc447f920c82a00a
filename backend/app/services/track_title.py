"""
Helpers for splitting and cleaning "Artist - Title" strings.
"""

import html
import re
from typing import Dict, Optional

# Common separators, tried in order
TITLE_SEPARATORS = [" - ", " – ", " — ", " | "]

MAX_TITLE_LENGTH = 200


def parse_track_title(track_title: Optional[str]) -> Dict[str, str]:
    """
    Split a now playing string into artist and title.

    Examples:
        "Daft Punk - One More Time" -> {"artist": "Daft Punk", "title": "One More Time"}
        "Station Jingle" -> {"title": "Station Jingle"}
    """
    if not track_title or not track_title.strip():
        return {}

    clean_title = html.unescape(track_title.strip())

    for separator in TITLE_SEPARATORS:
        if separator in clean_title:
            artist, title = clean_title.split(separator, 1)
            return {"artist": artist.strip(), "title": title.strip()}

    # If no separator found, treat as title only
    return {"title": clean_title}


def normalize_song_title(title: str) -> str:
    """Decode entities, collapse whitespace, trim stray dashes and cap length."""
    text = html.unescape(title).strip()
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"^\s*-\s*|\s*-\s*$", "", text)
    return text[:MAX_TITLE_LENGTH]
