"""Data models for traffic readings, bridge records and the status API."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TrafficStatus(str, Enum):
    OPEN = "OPEN"
    DELAYED = "DELAYED"
    CLOSED = "CLOSED"
    UNKNOWN = "UNKNOWN"


class Direction(str, Enum):
    BOTH = "both"
    NORTH = "north"
    SOUTH = "south"
    EASTBOUND = "eastbound"
    WESTBOUND = "westbound"


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys, accepting either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DirectionalReading(CamelModel):
    model_config = ConfigDict(frozen=True)

    status: TrafficStatus = TrafficStatus.UNKNOWN
    details: str
    average_speed: float = Field(default=0, ge=0)
    description: str = ""


class TrafficDirections(CamelModel):
    eastbound: DirectionalReading
    westbound: DirectionalReading


class OverallStatus(CamelModel):
    model_config = ConfigDict(frozen=True)

    status: TrafficStatus
    details: str


class TrafficData(CamelModel):
    directions: TrafficDirections
    overall_status: OverallStatus


class TrafficReport(TrafficData):
    """One aggregation pass over both directions."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BridgeRecord(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    status: TrafficStatus
    timestamp: datetime
    description: str
    direction: Direction = Direction.BOTH
    average_speed: float = Field(default=0, ge=0)
    version: int = 0


class Snapshot(CamelModel):
    records: list[BridgeRecord] = Field(default_factory=list, max_length=20)
    timestamp: datetime
    traffic_data: Optional[TrafficData] = None


class BridgeStatusResponse(CamelModel):
    success: bool = True
    data: list[BridgeRecord]
    cached: Optional[bool] = None
    stale: Optional[bool] = None
    real_time: Optional[bool] = None
    fallback: Optional[bool] = None
    error: Optional[str] = None
    timestamp: Optional[datetime] = None
    traffic_data: Optional[TrafficData] = None


class Events(CamelModel):
    kind: Literal["events"] = "events"
    events: list[BridgeRecord]


class NoEvents(CamelModel):
    kind: Literal["none"] = "none"
    message: str


EventsResult = Annotated[Union[Events, NoEvents], Field(discriminator="kind")]
