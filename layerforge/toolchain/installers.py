"""Runtime package installers."""

from __future__ import annotations

import logging
from pathlib import Path

from layerforge.toolchain.command import run_command, tail
from layerforge.toolchain.protocols import InstallError

logger = logging.getLogger(__name__)

# Where the installed package list is recorded inside an image root.
PACKAGE_LIST_PATH = Path("etc/layerforge/runtime-packages")


def _record(packages: list[str], rootfs: Path) -> Path:
    target = rootfs / PACKAGE_LIST_PATH
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("".join(f"{p}\n" for p in packages), encoding="utf-8")
    return target


class RecordingInstaller:
    """Records the runtime package list in the image root.

    The packages are installed when the base image is realized; nothing is
    executed at assembly time.
    """

    def install(self, packages: list[str], rootfs: Path) -> None:
        path = _record(packages, rootfs)
        logger.info("Recorded %d runtime package(s) in %s", len(packages), path)


class CommandInstaller:
    """Runs an install command with the package names appended.

    ``{rootfs}`` in the command template is replaced by the image root.
    """

    def __init__(self, command: list[str], *, timeout: float | None = None) -> None:
        if not command:
            raise ValueError("CommandInstaller requires a command")
        self._command = list(command)
        self._timeout = timeout

    def install(self, packages: list[str], rootfs: Path) -> None:
        if not packages:
            return
        argv = [arg.replace("{rootfs}", str(rootfs)) for arg in self._command]
        argv.extend(packages)
        try:
            completed = run_command(argv, timeout=self._timeout)
        except OSError as exc:
            raise InstallError(f"cannot run {argv[0]!r}: {exc}") from exc
        if completed.returncode != 0:
            raise InstallError(
                f"{argv[0]} exited with status {completed.returncode}: "
                f"{tail(completed.stderr) or '<no output>'}"
            )
        _record(packages, rootfs)
