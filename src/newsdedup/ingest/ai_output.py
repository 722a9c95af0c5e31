"""
Validation of the AI normalization agent's output.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from newsdedup.exceptions import IngestorError
from newsdedup.protocols import Entities, Theme

logger = structlog.get_logger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_THEMES = {theme.value for theme in Theme}


class EntitiesModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    orgs: List[str] = Field(default_factory=list)
    people: List[str] = Field(default_factory=list)
    products: List[str] = Field(default_factory=list)

    def to_entities(self) -> Entities:
        return Entities(orgs=list(self.orgs), people=list(self.people), products=list(self.products))


class NormalizedItem(BaseModel):
    """One normalized news item as returned by the agent."""

    model_config = ConfigDict(extra="ignore")

    external_id: Optional[str] = None
    source: Optional[str] = None
    url: Optional[str] = None
    title_canonical: str = ""
    title_canonical_original: Optional[str] = None
    lang: Optional[str] = None
    published_at: Optional[str] = None
    summary_short: str = ""
    summary_short_original: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    entities: EntitiesModel = Field(default_factory=EntitiesModel)
    duplicate_hint: Optional[str] = None
    theme: Optional[Theme] = None
    score: Optional[int] = None

    @field_validator("title_canonical", "summary_short", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("theme", mode="before")
    @classmethod
    def known_theme(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        if v not in _THEMES:
            logger.warning("Agent returned unknown theme, dropping it", theme=v)
            return None
        return v

    @field_validator("score", mode="before")
    @classmethod
    def clamp_score(cls, v: Any) -> Optional[int]:
        if v is None or v == "":
            return None
        return max(0, min(100, round(float(v))))

    @field_validator("entities", mode="before")
    @classmethod
    def default_entities(cls, v: Any) -> Any:
        return {} if v is None else v

    def published_datetime(self) -> Optional[datetime]:
        """``published_at`` parsed as an ISO-8601 timestamp, if it is one."""
        if not self.published_at:
            return None
        try:
            parsed = datetime.fromisoformat(self.published_at.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable published_at", value=self.published_at)
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class IngestorOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    normalized: List[NormalizedItem] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)


def parse_ingestor_output(text: str) -> IngestorOutput:
    """
    Parse the agent's reply, plain or wrapped in a markdown code fence.

    Raises:
        IngestorError: If the reply is not valid output JSON
    """
    if not text or not text.strip():
        raise IngestorError("Empty response from AI agent")

    match = _FENCED_JSON.search(text)
    payload = match.group(1) if match else text.strip()
    try:
        return IngestorOutput.model_validate_json(payload)
    except ValidationError as e:
        raise IngestorError(f"Unparseable AI agent output: {e.error_count()} validation error(s)") from e
