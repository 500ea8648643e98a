"""
Format-agnostic data model: what a container holds, what a backend produced, what was written.

All models are pydantic so results serialise straight to JSON for the CLI's --json output.
"""

from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ContainerFamily(StrEnum):
    """Container families the codec knows how to handle."""

    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    TIFF = "tiff"
    SIDECAR = "sidecar"


SIDECAR_MIME_TYPES = {
    "heic": "image/heic",
    "heif": "image/heif",
    "avif": "image/avif",
    "cr2": "image/x-canon-cr2",
    "cr3": "image/x-canon-cr3",
    "dng": "image/x-adobe-dng",
    "nef": "image/x-nikon-nef",
    "arw": "image/x-sony-arw",
    "raf": "image/x-fuji-raf",
    "orf": "image/x-olympus-orf",
    "rw2": "image/x-panasonic-rw2",
    "pef": "image/x-pentax-pef",
    "srw": "image/x-samsung-srw",
}


class ContainerKind(BaseModel):
    """
    Container family plus, for sidecar-only formats, the concrete subtype.

    Examples:
        >>> ContainerKind(family=ContainerFamily.SIDECAR, subtype="cr3").mime_type
        'image/x-canon-cr3'

    """

    model_config = ConfigDict(frozen=True)

    family: ContainerFamily
    subtype: str | None = None

    @property
    def is_sidecar(self) -> bool:
        return self.family is ContainerFamily.SIDECAR

    @property
    def mime_type(self) -> str:
        if self.family is ContainerFamily.SIDECAR:
            return SIDECAR_MIME_TYPES.get(self.subtype or "", "application/octet-stream")
        return {
            ContainerFamily.JPEG: "image/jpeg",
            ContainerFamily.PNG: "image/png",
            ContainerFamily.WEBP: "image/webp",
            ContainerFamily.TIFF: "image/tiff",
        }[self.family]

    def __str__(self) -> str:
        if self.subtype:
            return f"{self.family.value}({self.subtype})"
        return self.family.value


class Coordinate(BaseModel):
    """A WGS84 position. Range checks live in the GPS policy, not here."""

    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float


class ExistingMetadata(BaseModel):
    """Read-only projection of the metadata already present in a container."""

    model_config = ConfigDict(frozen=True)

    make: str | None = None
    model: str | None = None
    title: str | None = None
    description: str | None = None
    keywords: list[str] = Field(default_factory=list)
    subject: str | None = None
    gps: Coordinate | None = None
    # GPS latitude/longitude tags exist but could not be decoded.
    gps_present: bool = False

    date_time: str | None = None
    software: str | None = None
    orientation: str | None = None
    lens_model: str | None = None
    exposure_time: str | None = None
    f_number: str | None = None
    iso: str | None = None
    focal_length: str | None = None
    image_width: str | None = None
    image_height: str | None = None

    # Source-file byte ranges of known segments/tags: name -> (offset, length).
    locations: dict[str, tuple[int, int]] = Field(default_factory=dict)

    @property
    def has_gps(self) -> bool:
        return self.gps is not None or self.gps_present


class GeneratedMetadata(BaseModel):
    """Schema for structured generation results."""

    model_config = ConfigDict(frozen=True)

    title: str = ""
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    gps: Coordinate | None = None
    subject: str | None = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @field_validator("subject", mode="before")
    @classmethod
    def _join_subject(cls, value: object) -> object:
        # Models often answer with a list of subjects; XPSubject is a single string.
        if isinstance(value, (list, tuple)):
            value = "; ".join(str(v).strip() for v in value if str(v).strip())
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, value: object) -> object:
        """
        Drop blanks and case-insensitive duplicates, keeping first-seen order.

        Examples:
            >>> GeneratedMetadata(tags=["Sky", " sky ", "", "Sea"]).tags
            ['Sky', 'Sea']

        """
        if value is None:
            return []
        if isinstance(value, str):
            value = [part for part in value.replace(";", ",").split(",")]
        if not isinstance(value, (list, tuple)):
            return value
        seen: set[str] = set()
        tags: list[str] = []
        for item in value:
            tag = str(item).strip()
            if tag and tag.casefold() not in seen:
                seen.add(tag.casefold())
                tags.append(tag)
        return tags

    @property
    def is_empty(self) -> bool:
        return not self.title and not self.tags


class FieldSelection(BaseModel):
    """Which semantic fields to write and whether existing values may be replaced."""

    model_config = ConfigDict(frozen=True)

    write_title: bool = True
    write_description: bool = True
    write_tags: bool = True
    write_gps: bool = True
    write_subject: bool = True
    overwrite_existing: bool = False


class WriteOutcome(BaseModel):
    """What a writer actually emitted (or, in a dry run, would emit)."""

    title: bool = False
    description: bool = False
    tags: bool = False
    gps: bool = False
    subject: bool = False
    sidecar_path: Path | None = None
    skipped: list[str] = Field(default_factory=list)
    dry_run: bool = False

    @property
    def written_fields(self) -> list[str]:
        return [
            name
            for name in ("title", "description", "tags", "gps", "subject")
            if getattr(self, name)
        ]


class ProcessResult(BaseModel):
    """Aggregate outcome for one image."""

    path: Path
    kind: ContainerKind | None = None
    backend: str | None = None
    generated: GeneratedMetadata | None = None
    existing: ExistingMetadata | None = None
    outcome: WriteOutcome | None = None
    backup_path: Path | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
