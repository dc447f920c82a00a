import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from app.config.metadata_sources import WEBSITE_PATTERNS
from app.config.settings import MetadataSettings
from app.models import MetadataResult, StationHints, StrategyResult
from app.services.metadata_cache import MetadataCache
from app.services.metadata_detector import (
    MetadataDetector,
    MetadataStrategy,
    compose_now_playing,
    extract_fields,
    is_false_positive,
    looks_like_now_playing,
    scrape_now_playing,
)

SETTINGS = MetadataSettings(strategy_timeout=2.0, icy_probe_timeout=1.0, icy_extract_timeout=1.0)

HOMEPAGE_HTML = """
<html><head><script>var nowPlaying = function() {};</script></head>
<body>
  <div class="now-playing">Website Artist - Website Song</div>
  <img src="http://cdn.test/logo.png">
</body></html>
"""

VISTA_HTML = """
<div class="rb-item"><span class="rb-song"><strong>Vista Song</strong></span>
<span class="rb-artist">Vista Artist</span></div>
"""


async def no_icy(url):
    return MetadataResult.failure("No Icecast metadata headers found")


async def icy_ok(url):
    return MetadataResult(has_metadata=True, now_playing="Icy Artist - Icy Song", station_name="Icy FM", metaint=16000)


def make_station_app():
    async def stream(request):
        return web.Response(body=b"\xff\xfb" * 64, content_type="audio/mpeg")

    async def homepage(request):
        return web.Response(text=HOMEPAGE_HTML, content_type="text/html")

    async def nowplaying_json(request):
        return web.json_response({"nowplaying": "Json Artist - Json Song", "listeners": 12})

    async def laut_song(request):
        return web.json_response({"title": "Laut Song", "artist": {"name": "Laut Artist"}})

    async def live_playlist(request):
        body = "#EXTM3U\n#EXT-X-PROGRAM-DATE-TIME:2024-01-01T00:00:00Z\nsegment1.aac\n"
        return web.Response(text=body, content_type="application/vnd.apple.mpegurl")

    async def plain_playlist(request):
        return web.Response(text="#EXTM3U\nsegment1.aac\n", content_type="application/vnd.apple.mpegurl")

    async def header_stream(request):
        return web.Response(
            body=b"\x00" * 64,
            content_type="audio/mpeg",
            headers={"X-Current-Song": "Header Artist - Header Song"},
        )

    async def text_api(request):
        return web.Response(text="Text Artist - Text Song\n")

    async def custom_json(request):
        return web.json_response({"data": {"now": {"artist": "Deep Artist", "title": "Deep Song"}}})

    async def vista(request):
        return web.Response(text=VISTA_HTML, content_type="text/html")

    app = web.Application()
    app.router.add_get("/", homepage)
    app.router.add_get("/stream", stream)
    app.router.add_get("/nowplaying.json", nowplaying_json)
    app.router.add_get("/api/current_song", laut_song)
    app.router.add_get("/live.m3u8", live_playlist)
    app.router.add_get("/plain.m3u8", plain_playlist)
    app.router.add_get("/header-stream", header_stream)
    app.router.add_get("/text-api", text_api)
    app.router.add_get("/custom-json", custom_json)
    app.router.add_get("/content/playlist.php", vista)
    return app


def run_detector(fetcher, scenario, **detector_kwargs):
    async def main():
        server = TestServer(make_station_app())
        await server.start_server()
        cache = MetadataCache(fetcher)
        detector = MetadataDetector(cache, SETTINGS, **detector_kwargs)
        try:
            return await scenario(detector, lambda path: str(server.make_url(path)))
        finally:
            await detector.close()
            await server.close()

    return asyncio.run(main())


class FakeStrategy(MetadataStrategy):
    def __init__(self, type_, ok=True, authoritative=False, now_playing=None):
        self.type = type_
        self.description = f"{type_} fake"
        self.authoritative = authoritative
        self._ok = ok
        self._now_playing = now_playing
        self.calls = 0

    async def attempt(self, stream_url, hints, session):
        self.calls += 1
        if not self._ok:
            return self.failure("nothing here")
        return StrategyResult(type=self.type, description=self.description, now_playing=self._now_playing)


class SlowStrategy(MetadataStrategy):
    type = "json"
    timeout = 0.05

    async def attempt(self, stream_url, hints, session):
        await asyncio.sleep(10)


class BrokenStrategy(MetadataStrategy):
    type = "headers"

    async def attempt(self, stream_url, hints, session):
        raise KeyError("unexpected")


class TestDetectorWithFakeStrategies:
    def detect(self, strategies, **kwargs):
        async def main():
            detector = MetadataDetector(MetadataCache(no_icy), SETTINGS, strategies=strategies)
            try:
                return await detector.detect("http://radio.test/stream", **kwargs)
            finally:
                await detector.close()

        return asyncio.run(main())

    def test_ranking_by_priority(self):
        report = self.detect([
            FakeStrategy("website"),
            FakeStrategy("json"),
            FakeStrategy("icecast"),
            FakeStrategy("made-up"),
        ])
        assert report.success
        assert [r.type for r in report.working_methods] == ["icecast", "json", "website", "made-up"]
        assert report.best.type == "icecast"
        assert [r.type for r in report.tested_methods] == ["website", "json", "icecast", "made-up"]

    def test_ties_keep_attempt_order(self):
        first = FakeStrategy("custom", now_playing="first")
        second = FakeStrategy("laut.fm", now_playing="second")
        report = self.detect([first, second])
        assert [r.now_playing for r in report.working_methods] == ["first", "second"]

    def test_authoritative_success_stops_early(self):
        later = FakeStrategy("json")
        report = self.detect([FakeStrategy("icecast", authoritative=True), later])
        assert later.calls == 0
        assert len(report.tested_methods) == 1

    def test_exhaustive_continues(self):
        later = FakeStrategy("json")
        report = self.detect([FakeStrategy("icecast", authoritative=True), later], exhaustive=True)
        assert later.calls == 1
        assert len(report.working_methods) == 2

    def test_failed_authoritative_does_not_stop(self):
        later = FakeStrategy("json")
        report = self.detect([FakeStrategy("icecast", ok=False, authoritative=True), later])
        assert later.calls == 1
        assert report.best.type == "json"

    def test_timeout_and_exceptions_are_contained(self):
        report = self.detect([SlowStrategy(), BrokenStrategy(), FakeStrategy("website")])
        errors = {r.type: r.error for r in report.tested_methods}
        assert errors["json"].startswith("Timed out")
        assert errors["headers"] == "'unexpected'"
        assert report.best.type == "website"

    def test_nothing_works(self):
        report = self.detect([FakeStrategy("icecast", ok=False)])
        assert not report.success
        assert report.best is None
        assert report.working_methods == []
        assert len(report.tested_methods) == 1

    def test_missing_stream_url(self):
        async def main():
            detector = MetadataDetector(MetadataCache(no_icy), SETTINGS, strategies=[])
            await detector.detect("")

        with pytest.raises(ValueError):
            asyncio.run(main())


class TestDefaultStrategies:
    def test_falls_back_to_json_endpoint(self):
        async def scenario(detector, url):
            return await detector.detect(url("/stream"), StationHints(homepage=url("/")))

        report = run_detector(no_icy, scenario)

        assert report.success
        assert report.best.type == "json"
        assert report.best.now_playing == "Json Artist - Json Song"
        assert report.best.endpoint.endswith("/nowplaying.json")
        assert report.best.config["dataStructure"] == ["nowplaying", "listeners"]
        # Website scraping also worked but ranks below JSON
        assert [r.type for r in report.working_methods] == ["json", "website"]
        assert report.working_methods[1].now_playing == "Website Artist - Website Song"
        tested = [r.type for r in report.tested_methods]
        assert tested == ["icecast", "headers", "json", "website"]

    def test_icy_success_is_authoritative(self):
        async def scenario(detector, url):
            return await detector.detect(url("/stream"), StationHints(homepage=url("/")))

        report = run_detector(icy_ok, scenario)

        assert [r.type for r in report.tested_methods] == ["icecast"]
        best = report.best
        assert best.type == "icecast"
        assert best.confidence.value == "High"
        assert best.update_interval == 30
        assert best.now_playing == "Icy Artist - Icy Song"
        assert best.config["metaint"] == 16000
        assert best.config["stationName"] == "Icy FM"

    def test_strategies_needing_homepage_are_skipped(self):
        async def scenario(detector, url):
            return await detector.detect(url("/stream"))

        report = run_detector(no_icy, scenario)
        assert [r.type for r in report.tested_methods] == ["icecast", "headers"]
        assert not report.success

    def test_hls_capability(self):
        async def scenario(detector, url):
            return await detector.detect(url("/live.m3u8"))

        report = run_detector(no_icy, scenario)
        hls = report.best
        assert hls.type == "hls"
        assert hls.now_playing is None
        assert hls.config["hasProgramDateTime"] is True
        assert hls.config["hasTimedMetadata"] is False

    def test_hls_without_tags(self):
        async def scenario(detector, url):
            return await detector.detect(url("/plain.m3u8"))

        report = run_detector(no_icy, scenario)
        hls = next(r for r in report.tested_methods if r.type == "hls")
        assert hls.error == "No metadata tags found in HLS playlist"

    def test_custom_headers(self):
        async def scenario(detector, url):
            return await detector.detect(url("/header-stream"))

        report = run_detector(no_icy, scenario)
        assert report.best.type == "headers"
        assert report.best.now_playing == "Header Artist - Header Song"

    def test_saved_laut_fm_config_ranks_first(self):
        async def scenario(detector, url):
            hints = StationHints(metadata_api_type="laut.fm", metadata_api_url=url("/api/current_song"))
            return await detector.detect(url("/stream"), hints)

        report = run_detector(icy_ok, scenario)
        assert [r.type for r in report.working_methods] == ["laut.fm", "icecast"]
        assert report.best.now_playing == "Laut Artist - Laut Song"

    def test_saved_icecast_config_is_not_repeated(self):
        fetched = []

        async def counting_icy(url):
            fetched.append(url)
            return await icy_ok(url)

        async def scenario(detector, url):
            hints = StationHints(metadata_api_type="icecast", metadata_api_url=url("/stream"))
            return await detector.detect(url("/stream"), hints, exhaustive=True)

        report = run_detector(counting_icy, scenario)
        assert [r.type for r in report.working_methods] == ["icecast"]
        assert [r.type for r in report.tested_methods].count("icecast") == 1
        assert len(fetched) == 1

    def test_saved_icecast_config_for_another_url_still_probes_stream(self):
        async def scenario(detector, url):
            hints = StationHints(metadata_api_type="icecast", metadata_api_url=url("/other-stream"))
            return await detector.detect(url("/stream"), hints, exhaustive=True)

        report = run_detector(icy_ok, scenario)
        assert [r.type for r in report.tested_methods].count("icecast") == 2

    def test_saved_custom_text_config(self):
        async def scenario(detector, url):
            hints = StationHints(metadata_api_type="custom", metadata_api_url=url("/text-api"), metadata_format="text")
            return await detector.now_playing(url("/stream"), hints)

        result = run_detector(no_icy, scenario)
        assert result.type == "custom"
        assert result.now_playing == "Text Artist - Text Song"

    def test_saved_custom_json_field_mappings(self):
        async def scenario(detector, url):
            hints = StationHints(
                metadata_api_type="custom",
                metadata_api_url=url("/custom-json"),
                metadata_format="json",
                metadata_fields=json.dumps({"artist": "data.now.artist", "title": "data.now.title"}),
            )
            return await detector.now_playing(url("/stream"), hints)

        result = run_detector(no_icy, scenario)
        assert result.now_playing == "Deep Artist - Deep Song"

    def test_saved_vista_radio_config(self):
        async def scenario(detector, url):
            hints = StationHints(metadata_api_type="json", metadata_api_url=url("/content/playlist.php"))
            return await detector.now_playing(url("/stream"), hints)

        result = run_detector(no_icy, scenario)
        assert result.type == "vista-radio"
        assert result.now_playing == "Vista Artist - Vista Song"

    def test_saved_website_config(self):
        async def scenario(detector, url):
            fields = {"method": "website-scraping", "patterns": [
                {"pattern": r'<div class="now-playing">([^<]+)</div>', "example": "x"},
            ]}
            hints = StationHints(metadata_api_type="website", metadata_api_url=url("/"), metadata_fields=fields)
            return await detector.now_playing(url("/stream"), hints)

        result = run_detector(no_icy, scenario)
        assert result.type == "website"
        assert result.now_playing == "Website Artist - Website Song"

    def test_now_playing_falls_back_to_icy(self):
        async def scenario(detector, url):
            hints = StationHints(metadata_api_type="custom", metadata_api_url=url("/missing"))
            return await detector.now_playing(url("/stream"), hints)

        result = run_detector(icy_ok, scenario)
        assert result.type == "icecast"
        assert result.now_playing == "Icy Artist - Icy Song"

    def test_now_playing_without_any_source(self):
        async def scenario(detector, url):
            return await detector.now_playing(url("/stream"))

        result = run_detector(no_icy, scenario)
        assert not result.ok
        assert result.error == "No Icecast metadata headers found"


class TestHelpers:
    def test_extract_fields(self):
        data = {"now": {"artist": "A", "tracks": [{"title": "T"}]}, "x": 1}
        mappings = {"artist": "now.artist", "title": "now.tracks.0.title", "missing": "now.nope"}
        assert extract_fields(data, mappings) == {"artist": "A", "title": "T"}

    def test_compose_now_playing(self):
        assert compose_now_playing({"artist": "A", "title": "T"}) == "A - T"
        assert compose_now_playing({"artist": {"name": "A"}, "title": "T"}) == "A - T"
        assert compose_now_playing({"song": " Whole Song "}) == "Whole Song"
        assert compose_now_playing({"title": "Only Title"}) == "Only Title"
        assert compose_now_playing({}) is None

    def test_looks_like_now_playing(self):
        assert looks_like_now_playing({"nowplaying": "x"})
        assert looks_like_now_playing({"currentTrack": {}})
        assert not looks_like_now_playing({"status": "ok"})
        assert not looks_like_now_playing([{"title": "x"}])

    def test_false_positive_filter(self):
        assert is_false_positive("see https://example.com")
        assert is_false_positive("function() { x }")
        assert is_false_positive("-- ** -- ** --")
        assert is_false_positive("short")
        assert not is_false_positive("Artist Name - Song Title")

    def test_scrape_now_playing_json_blob(self):
        html = '<script>window.state = {"nowPlaying": "Blob Artist - Blob Song"};</script>'
        assert scrape_now_playing(html)[0][1] == "Blob Artist - Blob Song"

    def test_scrape_now_playing_ignores_markup(self):
        html = '<p>Now playing: <a href="/x">link</a></p><span class="title">id="logo" class="big</span>'
        assert scrape_now_playing(html) == []
        assert scrape_now_playing(html.replace('id="logo" class="big', "Real Artist - Real Song")) == [
            (WEBSITE_PATTERNS[-1].pattern, "Real Artist - Real Song"),
        ]
