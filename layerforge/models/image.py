"""Runtime image models: the declarative image spec and the assembled result."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EndpointProtocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class ExposedEndpoint(BaseModel):
    """A network endpoint the runtime image declares."""

    model_config = ConfigDict(frozen=True)

    port: int = Field(ge=1, le=65535)
    protocol: EndpointProtocol = EndpointProtocol.TCP

    @classmethod
    def parse(cls, value: str | int) -> ExposedEndpoint:
        """Parse ``"30303"``, ``"30303/udp"`` or ``8545`` (TCP by default)."""
        text = str(value).strip().lower()
        port, _, proto = text.partition("/")
        return cls(port=int(port), protocol=EndpointProtocol(proto or "tcp"))

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol.value}"


class CopySpec(BaseModel):
    """Copy a named artifact to a destination path inside the image."""

    model_config = ConfigDict(frozen=True)

    artifact: str
    destination: str


class AuxiliaryFileSpec(BaseModel):
    """Copy files matching a glob (relative to the build context) into a directory."""

    model_config = ConfigDict(frozen=True)

    pattern: str
    destination: str


class EntrypointSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    artifact: str
    args: tuple[str, ...] = ()


class ImageSpec(BaseModel):
    """What the runtime image should contain, before assembly."""

    model_config = ConfigDict(frozen=True)

    base: str = "ubuntu"
    workdir: str = "/app"
    runtime_packages: tuple[str, ...] = ()
    copies: tuple[CopySpec, ...] = ()
    auxiliary: tuple[AuxiliaryFileSpec, ...] = ()
    retain_external_source: str | None = None  # destination dir, if kept
    expose: tuple[ExposedEndpoint, ...] = ()
    entrypoint: EntrypointSpec
    labels: dict[str, str] = {}
    env: dict[str, str] = {}

    @field_validator("expose", mode="before")
    @classmethod
    def _parse_endpoints(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            parsed = [
                ExposedEndpoint.parse(v)
                if isinstance(v, (str, int))
                else ExposedEndpoint.model_validate(v)
                for v in value
            ]
            # Endpoints form a set; keep first-declared order.
            return tuple(dict.fromkeys(parsed))
        return value


class CopiedFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str  # artifact name or build-context relative path
    destination: str
    content_address: str = ""


class Entrypoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    args: tuple[str, ...] = ()


class RuntimeImage(BaseModel):
    """A published runtime image layout.

    Contains only runtime packages, copied artifacts and declared auxiliary
    files. Never the build cache, never build-only packages.
    """

    model_config = ConfigDict(frozen=True)

    image_id: str
    base: str
    workdir: str
    runtime_packages: tuple[str, ...] = ()
    copied: tuple[CopiedFile, ...] = ()
    exposed_endpoints: tuple[ExposedEndpoint, ...] = ()
    entrypoint: Entrypoint
    labels: dict[str, str] = {}
    env: dict[str, str] = {}
    metadata: dict[str, Any] = {}
    layout_path: Path | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
