"""Sandbox capability for the silent audit pass.

A sandbox takes a workspace directory and a natural-language instruction
and rewrites files in place. The default is UnavailableSandbox, which makes
the audit a no-op. OpenCodeSandbox drives the `opencode` CLI as a
subprocess with a hard timeout.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from codeforge.gateway.normalizer import is_safe_path
from codeforge.gateway.types import GeneratedFile

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "codeforge-audit-"


class SandboxError(Exception):
    """Raised when a sandbox run cannot complete."""


class SandboxTimeoutError(SandboxError):
    """Raised when a sandbox run exceeds its timeout. The process is killed."""


@dataclass
class SandboxResult:
    returncode: int | None = None
    diagnostics: list[str] = field(default_factory=list)
    output: str = ""


class Sandbox(ABC):
    """Capability that rewrites files in a workspace."""

    name: str = "sandbox"

    @property
    @abstractmethod
    def available(self) -> bool: ...

    @abstractmethod
    async def run(self, workspace: Path, instruction: str, timeout: float) -> SandboxResult: ...


class UnavailableSandbox(Sandbox):
    name = "unavailable"

    @property
    def available(self) -> bool:
        return False

    async def run(self, workspace: Path, instruction: str, timeout: float) -> SandboxResult:
        raise SandboxError("No sandbox configured")


class OpenCodeSandbox(Sandbox):
    """Runs `opencode run --non-interactive <instruction>` inside the workspace."""

    name = "opencode"

    def __init__(self, binary: str = "opencode", model: str = "", extra_env: dict[str, str] | None = None):
        self.binary = binary
        self.model = model
        self._extra_env = extra_env or {}
        self._path = shutil.which(binary)
        if self._path:
            logger.info("Sandbox: %s available at %s", binary, self._path)
        else:
            logger.warning("Sandbox: %s not installed, audit pass disabled", binary)

    @property
    def available(self) -> bool:
        return self._path is not None

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._extra_env)
        if self.model:
            env["OPENCODE_MODEL"] = self.model
        return env

    async def run(self, workspace: Path, instruction: str, timeout: float) -> SandboxResult:
        if self._path is None:
            raise SandboxError(f"{self.binary} is not installed")

        try:
            proc = await asyncio.create_subprocess_exec(
                self._path,
                "run",
                "--non-interactive",
                instruction,
                cwd=str(workspace),
                env=self._env(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SandboxError(f"Failed to start {self.binary}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise SandboxTimeoutError(f"{self.binary} timed out after {timeout}s") from e

        err_text = stderr.decode("utf-8", errors="replace")
        diagnostics = [
            line.strip()
            for line in err_text.splitlines()
            if "error" in line.lower() or "warning" in line.lower()
        ]
        return SandboxResult(
            returncode=proc.returncode,
            diagnostics=diagnostics,
            output=stdout.decode("utf-8", errors="replace"),
        )


# ---------------------------------------------------------------------------
# Workspace helpers
# ---------------------------------------------------------------------------


@contextmanager
def ephemeral_workspace(prefix: str = WORKSPACE_PREFIX) -> Iterator[Path]:
    """Uniquely named temp directory, removed on every exit path."""
    path = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def write_workspace(workspace: Path, files: list[GeneratedFile]) -> list[GeneratedFile]:
    """Write files under the workspace. Unsafe paths are skipped. Returns what was written."""
    written: list[GeneratedFile] = []
    for f in files:
        if not is_safe_path(f.path):
            logger.warning("Sandbox: skipping unsafe path %r", f.path)
            continue
        target = workspace / f.path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f.content, encoding="utf-8", errors="surrogatepass")
        written.append(f)
    return written


def read_workspace(workspace: Path, files: list[GeneratedFile]) -> dict[str, str]:
    """Current content of each file, keyed by path. Missing files are omitted."""
    contents: dict[str, str] = {}
    for f in files:
        target = workspace / f.path
        try:
            contents[f.path] = target.read_text(encoding="utf-8", errors="surrogatepass")
        except (OSError, UnicodeDecodeError):
            logger.debug("Sandbox: could not read back %s", f.path)
    return contents
