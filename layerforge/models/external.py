"""External component reference models."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from layerforge.models.artifacts import Artifact

_COMMIT_RE = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")


class ExternalComponentRef(BaseModel):
    """A repository location plus a pinned branch or revision."""

    model_config = ConfigDict(frozen=True)

    repository: str
    reference: str = "main"

    @property
    def is_mutable(self) -> bool:
        """True when the reference is a branch/tag name, not a full commit id."""
        return not _COMMIT_RE.match(self.reference)

    def __str__(self) -> str:
        return f"{self.repository}@{self.reference}"


class ResolvedReference(BaseModel):
    """What a reference pointed at when it was fetched.

    Recorded in the run ledger and the image metadata so that successive
    runs tracking a branch leave an audit trail of the commits they built.
    """

    model_config = ConfigDict(frozen=True)

    repository: str
    reference: str
    commit: str
    tree_digest: str = ""
    is_mutable: bool = True
    resolved_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class FetchedSource(BaseModel):
    """A source tree checked out by a ``SourceFetcher``."""

    model_config = ConfigDict(frozen=True)

    path: Path
    commit: str


class IntegratedComponent(BaseModel):
    """Outcome of integrating the external component in one run."""

    model_config = ConfigDict(frozen=True)

    artifact: Artifact
    resolution: ResolvedReference
    source_path: Path | None = None  # set only when the source tree is retained
    reused: bool = False
    drifted_from: str | None = None
