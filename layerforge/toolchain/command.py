"""Subprocess-backed toolchain driven by argv templates.

``CommandToolchain`` formats the template for a request's kind with the
request's fields and runs it without a shell. The toolchain is expected to
leave its result at ``{output}``; extra compiler flags travel in an
environment variable (``extra_flags_env``, e.g. ``RUSTFLAGS`` or ``CFLAGS``).
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from layerforge.models.recipe import ToolchainSpec
from layerforge.toolchain.protocols import BuildKind, BuildRequest, ToolchainError

logger = logging.getLogger(__name__)

_STDERR_TAIL = 2000


def run_command(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* capturing text output; a timeout becomes exit status 124."""
    if not args:
        raise ValueError("command requires at least one argument")
    try:
        return subprocess.run(
            list(args),
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            capture_output=True,
            text=True,
            timeout=timeout,
            stdin=subprocess.DEVNULL,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        stderr = exc.stderr.decode(errors="ignore") if isinstance(exc.stderr, bytes) else exc.stderr
        return subprocess.CompletedProcess(
            args=list(args),
            returncode=124,
            stdout="",
            stderr=f"{stderr or ''}\nCommand timed out after {timeout}s",
        )


def tail(text: str | None) -> str:
    """Last part of a (possibly long) process output."""
    text = (text or "").strip()
    return text[-_STDERR_TAIL:]


class CommandToolchain:
    """Runs a configured command per build kind.

    Parameters
    ----------
    spec:
        Argv templates and environment for this toolchain scope.
    timeout:
        Per-command timeout in seconds, or None for no limit.
    """

    def __init__(self, spec: ToolchainSpec, *, timeout: float | None = None) -> None:
        self._spec = spec
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self._spec.name

    def _template(self, kind: BuildKind) -> tuple[str, ...]:
        return {
            BuildKind.DEPENDENCY: self._spec.dependency,
            BuildKind.APPLICATION: self._spec.application,
            BuildKind.EXTERNAL: self._spec.external,
        }[kind]

    def render(self, request: BuildRequest) -> list[str]:
        """Format the argv template for *request*."""
        template = self._template(request.kind)
        if not template:
            raise ToolchainError(
                f"toolchain {self.name!r} has no command for {request.kind.value} builds"
            )
        fields = {
            "unit": request.unit,
            "version": request.version,
            "profile": request.profile,
            "features": ",".join(request.features),
            "source": str(request.source or ""),
            "output": str(request.output_path),
            "workdir": str(request.workdir),
        }
        try:
            return [arg.format(**fields) for arg in template]
        except (KeyError, IndexError, ValueError) as exc:
            raise ToolchainError(f"bad command template {template!r}: {exc}") from exc

    def environment(self, request: BuildRequest) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._spec.env)
        env[self._spec.extra_flags_env] = request.extra_flags
        env["LAYERFORGE_PROFILE"] = request.profile
        env["LAYERFORGE_FEATURES"] = ",".join(request.features)
        env["LAYERFORGE_INPUTS"] = os.pathsep.join(
            str(path) for _, path in sorted(request.inputs.items())
        )
        return env

    def build(self, request: BuildRequest) -> Path:
        argv = self.render(request)
        request.workdir.mkdir(parents=True, exist_ok=True)
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("toolchain %s: %s", self.name, " ".join(argv))

        try:
            completed = run_command(
                argv,
                cwd=request.source if request.source is not None else request.workdir,
                env=self.environment(request),
                timeout=self._timeout,
            )
        except OSError as exc:
            raise ToolchainError(f"cannot run {argv[0]!r}: {exc}") from exc

        if completed.returncode != 0:
            raise ToolchainError(
                f"{argv[0]} exited with status {completed.returncode}: "
                f"{tail(completed.stderr) or '<no output>'}"
            )
        if not request.output_path.is_file():
            raise ToolchainError(
                f"{argv[0]} succeeded but produced no output at {request.output_path}"
            )
        return request.output_path
