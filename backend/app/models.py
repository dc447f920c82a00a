"""
Pydantic models for API requests and responses.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Confidence(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"


# Station models
class StationBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    stream_url: str = Field(..., min_length=1, description="Live audio stream URL")
    homepage: Optional[str] = Field(None, description="Station website, used for JSON/HTML probing")
    # Saved metadata configuration (written by save-config)
    metadata_api_url: Optional[str] = Field(None, description="Endpoint of the saved metadata source")
    metadata_api_type: Optional[str] = Field(None, description="Strategy type of the saved source")
    metadata_format: Optional[str] = Field(None, description="json or text")
    metadata_fields: Optional[str] = Field(None, description="JSON-encoded strategy config / field mappings")


class StationCreate(StationBase):
    pass


class StationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    stream_url: Optional[str] = Field(None, min_length=1)
    homepage: Optional[str] = None
    metadata_api_url: Optional[str] = None
    metadata_api_type: Optional[str] = None
    metadata_format: Optional[str] = None
    metadata_fields: Optional[str] = None


class Station(StationBase):
    id: str


class StationHints(BaseModel):
    """What the detector may know about a station besides its stream URL."""
    id: Optional[str] = None
    name: Optional[str] = None
    homepage: Optional[str] = None
    metadata_api_url: Optional[str] = None
    metadata_api_type: Optional[str] = None
    metadata_format: Optional[str] = None
    metadata_fields: Optional[Union[str, Dict[str, Any]]] = None

    @property
    def has_saved_config(self) -> bool:
        return bool(self.metadata_api_url or self.metadata_api_type)


# Metadata models
class MetadataResult(BaseModel):
    """Outcome of an ICY metadata fetch for one stream URL."""
    has_metadata: bool
    now_playing: Optional[str] = Field(None, description="Current StreamTitle, None between tracks")
    station_name: Optional[str] = Field(None, description="icy-name header")
    description: Optional[str] = Field(None, description="icy-description header")
    metaint: Optional[int] = Field(None, gt=0, description="Bytes between metadata blocks")
    error: Optional[str] = None

    @model_validator(mode="after")
    def validate_result_fields(self):
        if self.has_metadata:
            if self.metaint is None:
                raise ValueError("metaint is required when has_metadata is true")
            if self.error is not None:
                raise ValueError("error must be empty when has_metadata is true")
        elif not self.error:
            raise ValueError("error is required when has_metadata is false")
        return self

    @classmethod
    def failure(cls, error: str) -> "MetadataResult":
        return cls(has_metadata=False, error=error)


class StrategyResult(BaseModel):
    """Uniform result shape reported by every detection strategy."""
    type: str
    description: str
    endpoint: Optional[str] = None
    confidence: Optional[Confidence] = None
    update_interval: Optional[int] = Field(None, description="Suggested polling interval in seconds")
    now_playing: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DetectionReport(BaseModel):
    success: bool
    best: Optional[StrategyResult] = None
    working_methods: List[StrategyResult] = []
    tested_methods: List[StrategyResult] = []


# API request/response models
class MetadataTestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_url: str = Field(..., alias="streamUrl", min_length=1)
    homepage: Optional[str] = None


class StationIdRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    station_id: str = Field(..., alias="stationId")


class SaveConfigRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    station_id: str = Field(..., alias="stationId")
    method: StrategyResult


class NowPlayingResponse(BaseModel):
    success: bool
    song: Optional[str] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    source: Optional[str] = Field(None, description="Strategy type that answered")
    station: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


class MemoryUsage(BaseModel):
    rss_mb: int
    vms_mb: int
    warning_mb: int
    critical_mb: int
    emergency_mb: int
    level: str
