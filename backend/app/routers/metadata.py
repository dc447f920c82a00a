"""
Now playing metadata API router.
"""
import logging

from fastapi import APIRouter, HTTPException, Request, Response

from app.models import (
    DetectionReport,
    MetadataTestRequest,
    NowPlayingResponse,
    SaveConfigRequest,
    StationHints,
    StationIdRequest,
)
from app.services.station_service import StationService, get_station_service
from app.services.track_title import normalize_song_title, parse_track_title

logger = logging.getLogger(__name__)

router = APIRouter()

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.get("", response_model=NowPlayingResponse, response_model_exclude_none=True)
async def get_now_playing(request: Request, response: Response, stream: str = ""):
    """
    Get the current track for a stream.

    A station registered with this stream URL and a saved metadata source
    is answered from that source first; otherwise ICY metadata is read
    through the shared request cache.
    """
    response.headers.update(NO_CACHE_HEADERS)
    if not stream:
        raise HTTPException(status_code=400, detail="Stream URL required")

    logger.info(f"Metadata request for: {stream}")
    station = get_station_service().find_by_stream_url(stream)
    hints = StationService.hints_for(station) if station else StationHints()

    detector = request.app.state.metadata_detector
    result = await detector.now_playing(stream, hints)
    station_name = station.name if station else None

    if not result.ok:
        return NowPlayingResponse(
            success=False,
            source=result.type,
            station=station_name,
            error=result.error,
        )

    if not result.now_playing:
        return NowPlayingResponse(
            success=False,
            source=result.type,
            station=station_name or (result.config or {}).get("stationName"),
            message="No metadata available for this stream",
        )

    song = normalize_song_title(result.now_playing)
    parts = parse_track_title(song)
    return NowPlayingResponse(
        success=True,
        song=song,
        title=parts.get("title"),
        artist=parts.get("artist"),
        source=result.type,
        station=station_name or (result.config or {}).get("stationName"),
    )


@router.post("/test", response_model=DetectionReport)
async def test_stream(test_req: MetadataTestRequest, request: Request):
    """Run every detection strategy against a stream URL."""
    detector = request.app.state.metadata_detector
    try:
        return await detector.detect(
            test_req.stream_url, StationHints(homepage=test_req.homepage)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/test-station", response_model=DetectionReport)
async def test_station(station_req: StationIdRequest, request: Request):
    """Run every detection strategy against a stored station."""
    station = get_station_service().get(station_req.station_id)
    if not station:
        raise HTTPException(status_code=404, detail="Station not found")

    detector = request.app.state.metadata_detector
    return await detector.detect(station.stream_url, StationService.hints_for(station))


@router.post("/save-config")
async def save_config(save_req: SaveConfigRequest):
    """Save a working detection result as the station's metadata source."""
    if not save_req.method.ok:
        raise HTTPException(status_code=400, detail="Cannot save a failed detection method")

    station = get_station_service().save_metadata_config(save_req.station_id, save_req.method)
    if not station:
        raise HTTPException(status_code=404, detail="Station not found")
    return {"success": True, "station": station}


@router.post("/clear-config")
async def clear_config(station_req: StationIdRequest):
    """Remove a station's saved metadata source."""
    station = get_station_service().clear_metadata_config(station_req.station_id)
    if not station:
        raise HTTPException(status_code=404, detail="Station not found")
    return {"success": True, "station": station}


@router.get("/cache")
async def get_cache_status(request: Request):
    """Get metadata cache status for debugging."""
    return request.app.state.metadata_cache.get_status()


@router.delete("/cache")
async def clear_cache(request: Request):
    """Drop all cached metadata results."""
    cache = request.app.state.metadata_cache
    cleared = len(cache)
    cache.clear()
    return {"success": True, "cleared": cleared}
