import json

from app.models import StationCreate, StationUpdate, StrategyResult
from app.services.station_service import StationService


def make_service(tmp_path):
    return StationService(str(tmp_path / "data" / "stations.json"))


def test_create_persists_and_reloads(tmp_path):
    service = make_service(tmp_path)
    station = service.create(StationCreate(name="Test FM", stream_url="http://test/stream"))

    reloaded = make_service(tmp_path)
    assert reloaded.get(station.id) == station
    assert [s.name for s in reloaded.get_all()] == ["Test FM"]


def test_update_is_partial(tmp_path):
    service = make_service(tmp_path)
    station = service.create(StationCreate(
        name="Test FM", stream_url="http://test/stream", homepage="http://test/",
    ))

    updated = service.update(station.id, StationUpdate(name="Renamed FM"))
    assert updated.name == "Renamed FM"
    assert updated.homepage == "http://test/"
    assert service.update("nope", StationUpdate(name="x")) is None


def test_delete(tmp_path):
    service = make_service(tmp_path)
    station = service.create(StationCreate(name="Test FM", stream_url="http://test/stream"))
    assert service.delete(station.id)
    assert not service.delete(station.id)
    assert make_service(tmp_path).get_all() == []


def test_find_by_stream_url(tmp_path):
    service = make_service(tmp_path)
    service.create(StationCreate(name="One", stream_url="http://one/stream"))
    two = service.create(StationCreate(name="Two", stream_url="http://two/stream"))
    assert service.find_by_stream_url("http://two/stream") == two
    assert service.find_by_stream_url("http://three/stream") is None


def test_save_json_metadata_config(tmp_path):
    service = make_service(tmp_path)
    station = service.create(StationCreate(name="Test FM", stream_url="http://test/stream"))
    method = StrategyResult(
        type="json",
        description="JSON API endpoint with metadata",
        endpoint="http://test/nowplaying.json",
        config={"method": "json-api", "endpoint": "http://test/nowplaying.json"},
    )

    saved = service.save_metadata_config(station.id, method)
    assert saved.metadata_api_type == "json"
    assert saved.metadata_api_url == "http://test/nowplaying.json"
    assert saved.metadata_format == "json"
    assert json.loads(saved.metadata_fields)["method"] == "json-api"


def test_save_icecast_config_uses_stream_url(tmp_path):
    service = make_service(tmp_path)
    station = service.create(StationCreate(name="Test FM", stream_url="http://test/stream"))
    method = StrategyResult(type="icecast", description="Icecast", config={"metaint": 16000})

    saved = service.save_metadata_config(station.id, method)
    assert saved.metadata_api_url == "http://test/stream"
    assert saved.metadata_format == "icy"


def test_clear_metadata_config(tmp_path):
    service = make_service(tmp_path)
    station = service.create(StationCreate(
        name="Test FM",
        stream_url="http://test/stream",
        metadata_api_type="laut.fm",
        metadata_api_url="http://api.laut.fm/station/test/current_song",
    ))

    cleared = service.clear_metadata_config(station.id)
    assert cleared.metadata_api_type is None
    assert cleared.metadata_api_url is None
    assert not StationService.hints_for(cleared).has_saved_config
    assert service.clear_metadata_config("nope") is None
    assert service.save_metadata_config("nope", StrategyResult(type="json", description="x")) is None


def test_hints_for(tmp_path):
    service = make_service(tmp_path)
    station = service.create(StationCreate(
        name="Test FM",
        stream_url="http://test/stream",
        homepage="http://test/",
        metadata_api_type="custom",
        metadata_api_url="http://test/api",
    ))

    hints = StationService.hints_for(station)
    assert hints.id == station.id
    assert hints.homepage == "http://test/"
    assert hints.has_saved_config


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "stations.json"
    path.write_text("{not json")
    assert StationService(str(path)).get_all() == []


def test_bare_list_format(tmp_path):
    path = tmp_path / "stations.json"
    path.write_text(json.dumps([{"id": "abc", "name": "Legacy FM", "stream_url": "http://legacy/stream"}]))
    assert StationService(str(path)).get("abc").name == "Legacy FM"
