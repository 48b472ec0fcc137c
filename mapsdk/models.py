from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional


class LocatorParts(BaseModel):
    """A locator split into the pieces the rewriters work on

    Formatting an unmodified instance gives back the exact locator it was parsed from.
    """
    protocol: str
    authority: str
    path: str = "/"
    params: List[str] = Field(default_factory=list)  # "key=value" strings, in order


class EventState(BaseModel):
    """Telemetry state persisted per event type

    Stored with the camelCase keys so state written by other SDK builds stays readable.
    """
    model_config = ConfigDict(populate_by_name=True)

    anonymous_id: Optional[str] = Field(default=None, alias="anonId")
    last_success: Optional[int] = Field(default=None, alias="lastSuccess")  # epoch millis
    last_access_token: Optional[str] = Field(default=None, alias="accessToken")


class ResourceLoadEntry(BaseModel):
    """Queued resource-load report"""
    subject_id: int
    timestamp: int


class DeliveryRequest(BaseModel):
    """A single telemetry POST handed to the transport"""
    url: str
    headers: Dict[str, str]
    body: str


class ResourceLoadReport(BaseModel):
    """Request body for POST /telemetry/resource-load"""
    locators: List[str]
    subject_id: int


class UsageTickReport(BaseModel):
    """Request body for POST /telemetry/usage"""
    locators: List[str]


class LocatorResponse(BaseModel):
    url: str
