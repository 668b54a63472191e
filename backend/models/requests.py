from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


MAX_INGEST_ITEMS = 200
MAX_ENRICH_ITEMS = 50

# Ids become store path segments.
_DOC_ID = r"^[^/]+$"


class _CamelModel(BaseModel):
    # Non-finite floats (1e400, NaN) fail validation instead of reaching storage.
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False
    )


def _require_absolute_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    p = urlparse(str(value))
    if not p.scheme or not p.netloc:
        raise ValueError("Invalid url")
    return str(value)


class MediaItem(_CamelModel):
    """One file reported by an agent. Unknown keys are ignored."""

    media_id: Optional[str] = Field(default=None, min_length=1, pattern=_DOC_ID)
    title: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    type: Literal["movie", "episode"]
    season: Optional[int] = Field(default=None, ge=0, strict=True)
    episode: Optional[int] = Field(default=None, ge=0, strict=True)
    year: Optional[int] = Field(default=None, strict=True)
    size: float = Field(..., gt=0)
    duration: float = Field(..., gt=0)
    codec: Optional[str] = None
    poster_url: Optional[str] = None
    backdrop_url: Optional[str] = None
    tmdb_id: Optional[int] = Field(default=None, strict=True)
    added_at: Optional[str] = None

    @field_validator("title", "filename", "path")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not str(v).strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("poster_url", "backdrop_url")
    @classmethod
    def _url(cls, v: Optional[str]) -> Optional[str]:
        return _require_absolute_url(v)

    @field_validator("added_at")
    @classmethod
    def _iso_datetime(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        try:
            parsed = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("Invalid ISO 8601 datetime format")
        if parsed.tzinfo is None:
            raise ValueError("Invalid ISO 8601 datetime format")
        return v

    def added_at_epoch(self) -> Optional[float]:
        if not self.added_at:
            return None
        return datetime.fromisoformat(self.added_at.replace("Z", "+00:00")).timestamp()


class AgentIngestRequest(BaseModel):
    # Items are validated one by one so a bad item cannot sink the request.
    items: List[Dict[str, Any]] = Field(..., max_length=MAX_INGEST_ITEMS)


class AgentClaimRequest(_CamelModel):
    claim_public_id: str = Field(..., min_length=1, max_length=128)
    claim_secret: str = Field(..., min_length=1, max_length=256)
    agent_name: Optional[str] = Field(default=None, max_length=128)
    agent_version: Optional[str] = Field(default=None, max_length=64)


class PlaybackReportRequest(_CamelModel):
    media_id: str = Field(..., min_length=1, pattern=_DOC_ID)
    position: float = Field(..., ge=0)
    duration: float = Field(..., gt=0)
    finished: Optional[bool] = None


class EnrichItem(_CamelModel):
    media_id: str = Field(..., min_length=1, pattern=_DOC_ID)
    type: Literal["movie", "episode"]
    title: str = Field(..., min_length=1)
    year: Optional[int] = Field(default=None, strict=True)


class EnrichRequest(BaseModel):
    items: List[EnrichItem] = Field(..., min_length=1, max_length=MAX_ENRICH_ITEMS)
