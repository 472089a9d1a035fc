"""Payload Normalizer, post-processes raw model text into generated files.

Applies the steps between a provider's raw text and the orchestrator:
  - Extracts the `{"files": [...]}` object from surrounding prose
  - Wraps bare code in a single-file payload when no object is present
  - Validates the file list (malformed output counts as a provider failure)
  - Guesses editor languages and rejects unsafe paths
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import PurePosixPath

from codeforge.gateway.types import GeneratedFile, clean_text

logger = logging.getLogger(__name__)

# Greedy: first "{" to last "}" around a "files" key
_FILES_OBJECT = re.compile(r'\{[\s\S]*"files"[\s\S]*\}', re.IGNORECASE)
_FENCE_OPEN = re.compile(r"```[\w-]*\n")
_FENCE_CLOSE = re.compile(r"```\n?$")
_WHITESPACE = re.compile(r"\s+")

_LANGUAGE_BY_EXTENSION = {
    "tsx": "typescript",
    "ts": "typescript",
    "jsx": "javascript",
    "js": "javascript",
    "css": "css",
    "json": "json",
    "md": "markdown",
    "html": "html",
    "prisma": "graphql",
    "yaml": "yaml",
    "yml": "yaml",
    "py": "python",
}

# Prompt keyword -> path for wrapping bare code. First match wins.
_WRAP_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("typescript", ".ts"), "app/page.ts"),
    (("react", "component", "next"), "app/page.tsx"),
    (("javascript", ".js"), "app/page.js"),
    (("python",), "app/main.py"),
    (("css",), "app/globals.css"),
    (("html",), "app/page.html"),
)
_WRAP_DEFAULT = "app/page.tsx"


class MalformedPayloadError(ValueError):
    """Raised when provider output does not contain a usable file list."""


def guess_language(path: str) -> str:
    """Editor language for a file path, by extension."""
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return _LANGUAGE_BY_EXTENSION.get(ext, "plaintext")


def is_safe_path(path: str) -> bool:
    """True for a relative path that stays inside the project root."""
    if not path or not path.strip():
        return False
    if path.startswith(("/", "\\")) or re.match(r"^[a-zA-Z]:", path):
        return False
    return ".." not in PurePosixPath(path.replace("\\", "/")).parts


def compact_prompt(prompt: str, limit: int) -> str:
    """Trim, collapse whitespace and cap length. `limit <= 0` disables the cap."""
    text = _WHITESPACE.sub(" ", prompt.strip())
    return text[:limit] if limit > 0 else text


def strip_fences(text: str) -> str:
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text)).strip()


def extract_payload(text: str, prompt: str = "", allow_wrap: bool = True) -> dict:
    """Pull the files object out of model text, or wrap the text as one file.

    With `allow_wrap=False` (JSON-mode providers) text without a decodable
    files object raises MalformedPayloadError instead.
    """
    match = _FILES_OBJECT.search(text or "")
    if match:
        try:
            payload = json.loads(match.group(0), strict=False)
            if isinstance(payload, dict):
                return payload
        except ValueError:
            logger.debug("Files object found but failed to decode")
    if not allow_wrap:
        raise MalformedPayloadError("Response contains no files object")
    if not (text or "").strip():
        raise MalformedPayloadError("Empty response")
    logger.debug("No files object in response, wrapping raw code")
    return wrap_code(text, prompt)


def wrap_code(code: str, prompt: str) -> dict:
    """Wrap bare code as a single-file payload, guessing the file from the prompt."""
    lowered = prompt.lower()
    path = _WRAP_DEFAULT
    for keywords, rule_path in _WRAP_RULES:
        if any(k in lowered for k in keywords):
            path = rule_path
            break
    return {"files": [{"path": path, "content": strip_fences(code), "language": guess_language(path)}]}


def validate_payload(payload: object) -> list[GeneratedFile]:
    """Return the payload's files, or raise MalformedPayloadError.

    Requires a non-empty `files` list where every entry has a non-empty
    string `path` and a non-empty string `content`.
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Payload is not an object")
    files = payload.get("files")
    if not isinstance(files, list) or not files:
        raise MalformedPayloadError("Payload has no files")

    result: list[GeneratedFile] = []
    for i, item in enumerate(files):
        if not isinstance(item, dict):
            raise MalformedPayloadError(f"File #{i} is not an object")
        path = item.get("path")
        content = item.get("content")
        if not isinstance(path, str) or not path:
            raise MalformedPayloadError(f"File #{i} has no path")
        if not isinstance(content, str) or not content:
            raise MalformedPayloadError(f"File {path} has no content")
        result.append(
            GeneratedFile(
                path=clean_text(path),
                content=clean_text(content),
                language=clean_text(item.get("language") or ""),
            )
        )
    return result


def parse_files(text: str, prompt: str = "", allow_wrap: bool = True) -> list[GeneratedFile]:
    """Extract and validate in one step."""
    return validate_payload(extract_payload(text, prompt, allow_wrap=allow_wrap))


def serialize_files(files: list[GeneratedFile]) -> str:
    """Cache representation of a file list."""
    return json.dumps({"files": [f.to_dict() for f in files]}, ensure_ascii=False)
