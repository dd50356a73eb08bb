from datetime import datetime, timezone
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MetaValue = Union[bool, int, float, str]


def utc_now_iso(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _Wire(BaseModel):
    # camelCase on the wire and in the store, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class PixelInitPayload(_Wire):
    label: Optional[str] = None
    metadata: Optional[Dict[str, MetaValue]] = None


class PixelMeta(_Wire):
    id: str
    created_at: str
    label: Optional[str] = None
    metadata: Optional[Dict[str, MetaValue]] = None
    token_hash: str
    open_count: int = 0
    last_opened_at: Optional[str] = None

    def public(self) -> dict:
        """Meta as shown to report readers: never includes the token hash."""
        return self.model_dump(by_alias=True, exclude={"token_hash"})


class PixelEvent(_Wire):
    # minimal, privacy-reduced
    timestamp: str
    anonymized_ip: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    language: Optional[str] = None
    geo: Optional[Dict[str, str]] = Field(None, description="country/region/city, present keys only")


class OpenContext(BaseModel):
    """Raw request metadata, before anonymization. Never persisted."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    language: Optional[str] = None
    geo: Optional[Dict[str, Optional[str]]] = None


class CreatedPixel(_Wire):
    id: str
    created_at: str
    pixel_url: str
    events_url: str
    access_token: str
