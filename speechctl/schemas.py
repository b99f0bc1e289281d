"""speechctl - Pydantic models for manifests and core results.

Manifest models correspond to specs/manifest.schema.json and use the
document's camelCase field names as aliases. Result models are what the core
returns to the CLI shell; the shell decides how to render them.
"""

from datetime import datetime  # noqa: I001
from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from speechctl.utils.hashing import parse_digest

Component = Literal["stt", "tts"]
Device = Literal["cpu", "gpu"]
UnpackKind = Literal["file", "archive"]
PartRole = Literal["runtime", "model"]

COMPONENTS: tuple[str, ...] = ("stt", "tts")
DEVICES: tuple[str, ...] = ("cpu", "gpu")


def _validate_tagged_digest(value: str) -> str:
    algorithm, hex_digest = parse_digest(value)
    return f"{algorithm}:{hex_digest}"


def _file_name_from_url(url: str) -> str:
    path = urlparse(url).path or url
    name = path.rstrip("/").rsplit("/", 1)[-1]
    return name or "artifact.bin"


# --- Manifest Models ---


class ArtifactPart(BaseModel):
    """Companion file installed together with an artifact (e.g. a runtime)."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    role: PartRole = Field(default="model", description="Where the part is placed")
    url: str = Field(..., min_length=1, description="Absolute URL or path of the part")
    size_bytes: int = Field(..., ge=0, alias="sizeBytes")
    digest: str = Field(..., description="Algorithm-tagged content hash")
    unpack_kind: UnpackKind = Field(default="file", alias="unpackKind")
    file_name: str | None = Field(default=None, min_length=1, alias="fileName")

    @field_validator("digest")
    @classmethod
    def check_digest(cls, value: str) -> str:
        return _validate_tagged_digest(value)

    @property
    def resolved_file_name(self) -> str:
        return self.file_name or _file_name_from_url(self.url)


class Artifact(BaseModel):
    """One installable unit. Immutable once parsed from a manifest."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    component: Component
    os: str = Field(..., min_length=1)
    arch: str = Field(..., min_length=1)
    device: Device
    variant: str = Field(default="", description="Model or voice name; empty = default")
    url: str = Field(..., min_length=1)
    size_bytes: int = Field(..., ge=0, alias="sizeBytes")
    digest: str = Field(..., description="Algorithm-tagged content hash")
    unpack_kind: UnpackKind = Field(default="file", alias="unpackKind")
    file_name: str | None = Field(default=None, min_length=1, alias="fileName")
    parts: tuple[ArtifactPart, ...] = Field(default=())

    @field_validator("digest")
    @classmethod
    def check_digest(cls, value: str) -> str:
        return _validate_tagged_digest(value)

    @property
    def key(self) -> tuple[str, str, str, str, str]:
        """Uniqueness key within one manifest."""
        return (self.component, self.os, self.arch, self.device, self.variant)

    @property
    def resolved_file_name(self) -> str:
        return self.file_name or _file_name_from_url(self.url)

    def as_part(self) -> ArtifactPart:
        """The primary file of this artifact, in the same shape as its parts."""
        return ArtifactPart(
            role="model",
            url=self.url,
            size_bytes=self.size_bytes,
            digest=self.digest,
            unpack_kind=self.unpack_kind,
            file_name=self.resolved_file_name,
        )

    def all_parts(self) -> tuple[ArtifactPart, ...]:
        return (self.as_part(), *self.parts)


class Manifest(BaseModel):
    """A release manifest: available artifacts for one release."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    schema_version: int = Field(..., alias="schemaVersion")
    release_version: str = Field(..., min_length=1, alias="releaseVersion")
    default_variants: dict[str, str] = Field(default_factory=dict, alias="defaultVariants")
    artifacts: tuple[Artifact, ...] = Field(default=())

    def duplicate_keys(self) -> list[tuple[str, str, str, str, str]]:
        """Keys that appear on more than one artifact (manifest authoring errors)."""
        seen: set[tuple[str, str, str, str, str]] = set()
        duplicates: list[tuple[str, str, str, str, str]] = []
        for artifact in self.artifacts:
            if artifact.key in seen and artifact.key not in duplicates:
                duplicates.append(artifact.key)
            seen.add(artifact.key)
        return duplicates


# --- Runtime Facts ---


class PlatformFacts(BaseModel):
    """Host facts resolved at runtime. Not persisted."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    os: str = Field(..., description="Normalized OS name (linux, darwin, windows)")
    arch: str = Field(..., description="Normalized architecture (amd64, arm64, ...)")
    gpu: bool = Field(default=False, description="Probed GPU capability")


# --- Result Models ---


class InstallResult(BaseModel):
    """Result of an install operation."""

    model_config = ConfigDict(extra="forbid")

    status: Literal["installed", "upgraded", "reinstalled", "up_to_date"]
    component: str
    variant: str
    version: str = Field(..., description="Release version of the installed artifact")
    installed_path: str
    digest: str
    device: str
    warnings: list[str] = Field(default_factory=list)


class InstallRecordView(BaseModel):
    """Read-only view of a stored install record."""

    model_config = ConfigDict(extra="forbid", from_attributes=True)

    component: str
    variant: str
    release_version: str
    digest: str
    install_path: str
    installed_at: datetime
    device: str | None = None
    unpack_kind: str | None = None


class ComponentStatus(BaseModel):
    """Health of one installed (component, variant)."""

    model_config = ConfigDict(extra="forbid")

    component: str
    variant: str
    version: str
    ok: bool
    install_path: str
    problem: str | None = None


class CheckResult(BaseModel):
    """Result of a check operation."""

    model_config = ConfigDict(extra="forbid")

    components: list[ComponentStatus] = Field(default_factory=list)
    repaired: bool = Field(default=False, description="True if the store was rebuilt")

    @property
    def ok(self) -> bool:
        return all(c.ok for c in self.components)


class ErrorResponse(BaseModel):
    """Structured error emitted by the CLI in --json mode."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error")
    error_code: str = Field(..., description="Error taxonomy code")
    error_message: str = Field(..., description="Human-readable error description")
    exit_code: int


__all__ = [
    "COMPONENTS",
    "DEVICES",
    "ArtifactPart",
    "Artifact",
    "Manifest",
    "PlatformFacts",
    "InstallResult",
    "InstallRecordView",
    "ComponentStatus",
    "CheckResult",
    "ErrorResponse",
]
