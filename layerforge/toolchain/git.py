"""Git-backed ``SourceFetcher``.

Branch and tag references are cloned shallowly with ``--branch``; full
commit ids are cloned and then checked out. Either way the resolved commit
is read back with ``git rev-parse HEAD``.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from layerforge.models.external import ExternalComponentRef, FetchedSource
from layerforge.toolchain.command import run_command, tail
from layerforge.toolchain.protocols import SourceFetchError

logger = logging.getLogger(__name__)


class GitFetcher:
    """Fetch a repository at a reference with the ``git`` CLI."""

    def __init__(self, git: str = "git", *, timeout: float | None = None) -> None:
        self._git = git
        self._timeout = timeout

    def _run(self, *args: str, cwd: Path | None = None) -> str:
        argv = [self._git, *args]
        try:
            completed = run_command(argv, cwd=cwd, timeout=self._timeout)
        except OSError as exc:
            raise SourceFetchError(f"cannot run {self._git!r}: {exc}") from exc
        if completed.returncode != 0:
            raise SourceFetchError(
                f"git {args[0]} failed with status {completed.returncode}: "
                f"{tail(completed.stderr) or '<no output>'}"
            )
        return completed.stdout.strip()

    def fetch(self, ref: ExternalComponentRef, destination: Path) -> FetchedSource:
        destination = Path(destination)
        if destination.exists():
            shutil.rmtree(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        if ref.is_mutable:
            self._run(
                "clone", "--depth", "1", "--branch", ref.reference,
                ref.repository, str(destination),
            )
        else:
            self._run("clone", "--no-checkout", ref.repository, str(destination))
            self._run("checkout", "--detach", ref.reference, cwd=destination)

        commit = self._run("rev-parse", "HEAD", cwd=destination)
        logger.info("Fetched %s at %s", ref, commit[:12])
        return FetchedSource(path=destination, commit=commit)
