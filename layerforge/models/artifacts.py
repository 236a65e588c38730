"""Artifact and cache models (immutable once produced)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from layerforge.core.hasher import content_address


class StoredBlob(BaseModel):
    """Metadata for bytes held in the content-addressed store.

    The content_address is both the identity and the integrity check.
    """

    model_config = ConfigDict(frozen=True)

    content_address: str  # "sha256:<hex>"
    name: str
    size_bytes: int
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class Artifact(BaseModel):
    """A binary produced by a pipeline stage.

    Produced once per build invocation. The payload lives in the artifact
    store under ``content_address``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    stage_id: str
    content_address: str
    profile: str = "release"
    features: tuple[str, ...] = ()
    size_bytes: int = 0
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class CacheKey(BaseModel):
    """The (fingerprint, profile, features, flags) tuple a cache entry is keyed by."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    profile: str
    features: tuple[str, ...] = ()
    extra_flags: str = ""

    @property
    def digest(self) -> str:
        return content_address(self.model_dump(mode="json"))


class CacheEntry(BaseModel):
    """Compiled outputs for one cache key.

    Created on the first build for a key and reused, never mutated, by every
    later build with the same key.
    """

    model_config = ConfigDict(frozen=True)

    cache_key: str
    fingerprint: str
    profile: str
    features: tuple[str, ...] = ()
    extra_flags: str = ""
    artifacts: dict[str, str] = {}  # unit name -> content address
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
