"""Content-addressed, immutable artifact store.

Storage layout: {base_path}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat
No delete method; artifacts are immutable once stored. Writes go through a
temporary file and an atomic rename so concurrent writers of the same
content never expose a partially written blob.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path

from layerforge.core.hasher import hash_file, sha256_hex
from layerforge.models.artifacts import StoredBlob


class ArtifactIntegrityError(RuntimeError):
    """Raised when a stored artifact's hash does not match its address."""


class ContentAddressedStore:
    """SHA-256 keyed, immutable artifact store.

    Every artifact is stored under its SHA-256 digest. Storing the same
    content twice is a no-op (idempotent). There is no update or delete.

    Parameters
    ----------
    base_path:
        Root directory for artifact storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    @staticmethod
    def _extract_digest(content_address: str) -> str:
        """Strip the ``sha256:`` prefix from a content address, if present."""
        return content_address.removeprefix("sha256:")

    def _artifact_path(self, sha256_digest: str) -> Path:
        """Layout: {base}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat"""
        return self._base / sha256_digest[:2] / sha256_digest[2:4] / f"{sha256_digest}.dat"

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(self, data: bytes, *, name: str = "") -> StoredBlob:
        """Store bytes and return their content-addressed metadata."""
        digest = sha256_hex(data)
        path = self._artifact_path(digest)
        if path.exists():
            self._check_existing(digest)
        else:
            self._write_atomic(path, lambda fh: fh.write(data))
        return StoredBlob(
            content_address=f"sha256:{digest}",
            name=name or digest[:16],
            size_bytes=len(data),
        )

    def store_file(self, source: Path, *, name: str = "") -> StoredBlob:
        """Store a file's content without loading it into memory."""
        source = Path(source)
        digest = hash_file(source)
        path = self._artifact_path(digest)
        if path.exists():
            self._check_existing(digest)
        else:
            def _copy(fh) -> None:
                with source.open("rb") as src:
                    shutil.copyfileobj(src, fh)

            self._write_atomic(path, _copy)
            # The source may have changed between hashing and copying.
            if hash_file(path) != digest:
                path.unlink(missing_ok=True)
                raise ArtifactIntegrityError(
                    f"{source} changed while being stored"
                )
        return StoredBlob(
            content_address=f"sha256:{digest}",
            name=name or source.name,
            size_bytes=path.stat().st_size,
        )

    def _check_existing(self, digest: str) -> None:
        if not self.verify(digest):
            raise ArtifactIntegrityError(
                f"Existing artifact at {digest} failed integrity check"
            )

    @staticmethod
    def _write_atomic(path: Path, write) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                write(fh)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    def retrieve(self, content_address: str) -> bytes:
        """Retrieve artifact bytes by content address.

        Parameters
        ----------
        content_address:
            Either "sha256:<hex>" or just the hex digest.
        """
        digest = self._extract_digest(content_address)
        path = self._artifact_path(digest)
        if not path.exists():
            raise FileNotFoundError(f"Artifact not found: {content_address}")
        return path.read_bytes()

    def materialize(
        self, content_address: str, destination: Path, *, executable: bool = False
    ) -> Path:
        """Copy a stored artifact to *destination* after verifying it."""
        digest = self._extract_digest(content_address)
        if not self.exists(digest):
            raise FileNotFoundError(f"Artifact not found: {content_address}")
        if not self.verify(digest):
            raise ArtifactIntegrityError(
                f"Artifact {content_address} failed integrity check"
            )
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self._artifact_path(digest), destination)
        if executable:
            destination.chmod(0o755)
        return destination

    # ------------------------------------------------------------------
    # Check and verify
    # ------------------------------------------------------------------

    def exists(self, content_address: str) -> bool:
        """Check if an artifact exists in the store."""
        return self._artifact_path(self._extract_digest(content_address)).exists()

    def verify(self, content_address: str) -> bool:
        """Re-hash stored data and compare against the content address."""
        digest = self._extract_digest(content_address)
        path = self._artifact_path(digest)
        if not path.exists():
            return False
        return hash_file(path) == digest

    def size(self, content_address: str) -> int:
        """Size in bytes of a stored artifact."""
        path = self._artifact_path(self._extract_digest(content_address))
        if not path.exists():
            raise FileNotFoundError(f"Artifact not found: {content_address}")
        return path.stat().st_size
