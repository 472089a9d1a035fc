"""Silent Audit, optional secondary pass that repairs generated source files.

Decides when to invoke the sandbox and merges its output back:
  - source-like files are written to an ephemeral workspace
  - the sandbox rewrites them under a bounded timeout
  - changed content is merged into the original ordered list by path

The audit never fails the request: an unavailable sandbox, a timeout or
any sandbox error yields the pre-audit files unchanged.
"""

from __future__ import annotations

import logging

from codeforge.core.config import settings
from codeforge.core.metrics import AUDIT_RUNS
from codeforge.gateway.prompts import AUDIT_INSTRUCTION
from codeforge.gateway.sandbox import (
    Sandbox,
    SandboxError,
    UnavailableSandbox,
    ephemeral_workspace,
    read_workspace,
    write_workspace,
)
from codeforge.gateway.types import AuditOutcome, GeneratedFile

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = (".tsx", ".ts", ".jsx", ".js")

# Failure signatures in build or runtime output that warrant an audit
AUDIT_TRIGGERS = (
    "cannot find module",
    "is not defined",
    "unexpected token",
    "type error",
    "syntaxerror",
    "referenceerror",
    "typeerror",
    "failed to compile",
    "error ts",
    "can't resolve",
    "module not found",
)

# User messages that ask for sandbox work rather than a plain edit
COMMAND_TRIGGERS = (
    "npm install",
    "npm i ",
    "pnpm add",
    "yarn add",
    "fix this",
    "fix the error",
    "why is this broken",
    "not working",
    "debug this",
    "optimize",
)


def should_audit(text: str) -> bool:
    """True when build/runtime output contains a known failure signature."""
    lower = text.lower()
    return any(trigger in lower for trigger in AUDIT_TRIGGERS)


def is_command(message: str) -> bool:
    lower = message.lower()
    return any(trigger in lower for trigger in COMMAND_TRIGGERS)


def command_type(message: str) -> str:
    """Classify a user message: run, fix, explain or audit."""
    lower = message.lower()
    if "npm" in lower or "pnpm" in lower or "yarn" in lower:
        return "run"
    if "fix" in lower or "error" in lower or "broken" in lower:
        return "fix"
    if "why" in lower or "explain" in lower or "debug" in lower:
        return "explain"
    return "audit"


def wants_audit(instruction: str) -> bool:
    """True when an edit instruction carries failure output or asks for a fix."""
    if should_audit(instruction):
        return True
    return is_command(instruction) and command_type(instruction) in ("fix", "audit")


def is_source_file(path: str) -> bool:
    return path.endswith(SOURCE_EXTENSIONS)


class SilentAuditor:
    """Runs the audit pass through a Sandbox capability."""

    def __init__(self, sandbox: Sandbox | None = None, timeout: float | None = None):
        self.sandbox = sandbox or UnavailableSandbox()
        self.timeout = timeout or settings.audit_timeout_seconds

    @property
    def available(self) -> bool:
        return self.sandbox.available

    def build_instruction(self, context: str) -> str:
        if not context:
            return AUDIT_INSTRUCTION
        return f"{AUDIT_INSTRUCTION}\n\nContext: {context}"

    async def audit(self, files: list[GeneratedFile], context: str = "") -> AuditOutcome:
        """Full outcome with diagnostics. Never raises."""
        if not self.sandbox.available:
            return AuditOutcome(files_after=files)

        sources = [f for f in files if is_source_file(f.path)]
        if not sources:
            return AuditOutcome(files_after=files)

        logger.info("Audit: running %s on %d file(s)", self.sandbox.name, len(sources))

        try:
            with ephemeral_workspace() as workspace:
                written = write_workspace(workspace, sources)
                if not written:
                    return AuditOutcome(files_after=files)
                result = await self.sandbox.run(workspace, self.build_instruction(context), self.timeout)
                rewritten = read_workspace(workspace, written)
        except SandboxError as e:
            logger.warning("Audit: %s", e)
            AUDIT_RUNS.labels(outcome="failed").inc()
            return AuditOutcome(files_after=files, diagnostics=[str(e)])
        except Exception as e:
            logger.warning("Audit: %s failed: %s", self.sandbox.name, e, exc_info=True)
            AUDIT_RUNS.labels(outcome="failed").inc()
            return AuditOutcome(files_after=files, diagnostics=[str(e)])

        changed = {f.path: rewritten[f.path] for f in written if f.path in rewritten and rewritten[f.path] != f.content}
        if not changed:
            AUDIT_RUNS.labels(outcome="clean").inc()
            return AuditOutcome(files_after=files, diagnostics=result.diagnostics)

        merged = [
            GeneratedFile(path=f.path, content=changed[f.path], language=f.language) if f.path in changed else f
            for f in files
        ]
        logger.info("Audit: fixed %d file(s) silently", len(changed))
        AUDIT_RUNS.labels(outcome="fixed").inc()
        return AuditOutcome(files_after=merged, fixed=True, diagnostics=result.diagnostics)

    async def silent_audit(self, files: list[GeneratedFile], context: str = "") -> list[GeneratedFile]:
        """Audited files; the input list itself when nothing changed."""
        outcome = await self.audit(files, context)
        return outcome.files_after
