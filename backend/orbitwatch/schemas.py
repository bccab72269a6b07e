from typing import Any

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    kind: str
    message: str


class Envelope(BaseModel):
    success: bool
    data: Any | None = None
    error: ErrorBody | None = None


class RefreshRequest(BaseModel):
    url: str | None = Field(default=None, description="Override the configured TLE source for this fetch")


class TLEUpload(BaseModel):
    text: str = Field(min_length=1, description="One or more two- or three-line element sets")


class MetadataUpdate(BaseModel):
    mass_kg: float | None = Field(default=None, gt=0)
    area_m2: float | None = Field(default=None, gt=0)
    operator: str | None = Field(default=None, max_length=128)
    controlled: bool = False
    hard_body_radius_m: float | None = Field(default=None, gt=0, le=1000)
    object_type: str | None = Field(default=None, max_length=32)


class AcknowledgeRequest(BaseModel):
    by: str = Field(default="operator", min_length=1, max_length=128)
    method: str = Field(default="api", description="websocket, api, webhook or email")
    note: str | None = Field(default=None, max_length=1024)


class ResolveRequest(BaseModel):
    by: str = Field(default="operator", min_length=1, max_length=128)
    note: str | None = Field(default=None, max_length=1024)


class EscalateRequest(BaseModel):
    reason: str = Field(default="manual", min_length=1, max_length=256)


class WebhookCreate(BaseModel):
    name: str | None = Field(default=None, max_length=128)
    type: str = Field(description="slack, pagerduty, email or generic")
    url: str
    auth: dict | None = None
    filters: dict | None = None
    retry: dict | None = None
    enabled: bool = True
    config: dict | None = None


class WebhookUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=128)
    type: str | None = None
    url: str | None = None
    auth: dict | None = None
    filters: dict | None = None
    retry: dict | None = None
    enabled: bool | None = None
    config: dict | None = None


class ReentryAcknowledgeRequest(BaseModel):
    by: str = Field(default="operator", min_length=1, max_length=128)
