from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Sequence, Set

import yaml
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError, field_validator, model_validator

from realty_agent.realty_core.config import project_root

MATCH_EXACT = "exact"
MATCH_AMBIGUOUS = "ambiguous"
MATCH_NONE = "none"

CONFIDENCE_EXACT = 100
CONFIDENCE_SUBSTRING = 90
CONFIDENCE_AMBIGUOUS = 50
CONFIDENCE_NONE = 0

MIN_SUBSTRING_LENGTH = 2


class CatalogValidationError(ValueError):
    """Raised when catalog data does not match the expected schema."""


class Property(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(pattern=r"^[a-z0-9][a-z0-9_-]{2,63}$")
    name: str = Field(min_length=2, max_length=120)
    price: str = Field(min_length=1, max_length=40)
    bedrooms: int = Field(ge=0, le=10)
    location: str = Field(min_length=2, max_length=80)
    tenure: Literal["new_launch", "resale"]
    url: Optional[HttpUrl] = None

    @field_validator("name", "location")
    @classmethod
    def strip_text(cls, value: str) -> str:
        cleaned = " ".join(value.split())
        if len(cleaned) < 2:
            raise ValueError("must contain at least 2 non-space characters")
        return cleaned

    def listing_line(self) -> str:
        tenure = "new launch" if self.tenure == "new_launch" else "resale"
        return f"{self.name}, {self.price}, {self.bedrooms}BR, {self.location} ({tenure})"


class Catalog(BaseModel):
    model_config = ConfigDict(extra="forbid")

    properties: List[Property] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_uniques(self) -> "Catalog":
        seen_ids: Set[str] = set()
        seen_names: Set[str] = set()
        duplicates: Set[str] = set()
        for item in self.properties:
            name_key = item.name.lower()
            if item.id in seen_ids or name_key in seen_names:
                duplicates.add(item.id)
            seen_ids.add(item.id)
            seen_names.add(name_key)
        if duplicates:
            raise ValueError(f"duplicate property ids or names found: {', '.join(sorted(duplicates))}")
        return self

    def names(self) -> List[str]:
        return [item.name for item in self.properties]


@dataclass
class PropertyMatch:
    kind: str
    value: Optional[str] = None
    candidates: List[str] = field(default_factory=list)
    confidence: int = CONFIDENCE_NONE


def default_catalog_path() -> Path:
    return project_root() / "catalog" / "properties.yaml"


def _format_validation_error(error: ValidationError, source: Path) -> str:
    lines = [f"Catalog validation failed for {source}:"]
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "validation error")
        lines.append(f"- {location}: {message}")
    return "\n".join(lines)


def parse_catalog(raw_data: Dict[str, Any], source: Path) -> Catalog:
    try:
        return Catalog.model_validate(raw_data)
    except ValidationError as exc:
        raise CatalogValidationError(_format_validation_error(exc, source)) from exc


def load_catalog(path: Optional[Path] = None) -> Catalog:
    catalog_path = path or default_catalog_path()
    with catalog_path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if not isinstance(data, dict):
        raise CatalogValidationError(
            f"Catalog at {catalog_path} must be a mapping with top-level key 'properties'."
        )
    return parse_catalog(data, catalog_path)


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


def match_property(text: Optional[str], names: Sequence[str]) -> PropertyMatch:
    """Match free text against catalog property names.

    Case-insensitive equality wins outright. Otherwise a name containing the
    input, or an input containing the name, counts as a hit: one hit is a
    confident match, several hits must be disambiguated by the caller.
    """
    needle = _normalize(text or "")
    if not needle:
        return PropertyMatch(kind=MATCH_NONE)

    for name in names:
        if _normalize(name) == needle:
            return PropertyMatch(kind=MATCH_EXACT, value=name, candidates=[name], confidence=CONFIDENCE_EXACT)

    if len(needle) < MIN_SUBSTRING_LENGTH:
        return PropertyMatch(kind=MATCH_NONE)

    hits: List[str] = []
    for name in names:
        candidate = _normalize(name)
        if needle in candidate or candidate in needle:
            hits.append(name)

    if len(hits) == 1:
        return PropertyMatch(kind=MATCH_EXACT, value=hits[0], candidates=hits, confidence=CONFIDENCE_SUBSTRING)
    if hits:
        return PropertyMatch(kind=MATCH_AMBIGUOUS, candidates=hits, confidence=CONFIDENCE_AMBIGUOUS)
    return PropertyMatch(kind=MATCH_NONE)


def select_candidate(text: Optional[str], candidates: Sequence[str]) -> Optional[str]:
    """Resolve a disambiguation reply: a 1-based number or a unique name match."""
    cleaned = (text or "").strip()
    if not cleaned or not candidates:
        return None
    number = re.fullmatch(r"#?\s*(\d{1,2})[.)]?", cleaned)
    if number:
        index = int(number.group(1)) - 1
        return candidates[index] if 0 <= index < len(candidates) else None
    result = match_property(cleaned, candidates)
    return result.value if result.kind == MATCH_EXACT else None
