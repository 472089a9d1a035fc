"""Credential discovery, assembled once at startup.

For each provider prefix (e.g. GROQ_API_KEY) the numbered variables
`<PREFIX>_1` .. `<PREFIX>_20` are collected in order (gaps allowed,
values trimmed, duplicates dropped). The unsuffixed `<PREFIX>` is used only
when no numbered key is set. Values from `.env` sit under the process
environment.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from dotenv import dotenv_values

from codeforge.gateway.types import ProviderId

logger = logging.getLogger(__name__)

MAX_NUMBERED_KEYS = 20

CREDENTIAL_PREFIXES: dict[ProviderId, str] = {
    ProviderId.GROQ: "GROQ_API_KEY",
    ProviderId.HUGGINGFACE: "HUGGINGFACE_API_KEY",
    ProviderId.OPENAI: "OPENAI_API_KEY",
    ProviderId.GEMINI: "GEMINI_API_KEY",
    ProviderId.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderId.DEEPSEEK: "DEEPSEEK_API_KEY",
}


@dataclass
class CredentialConfig:
    """Secrets per provider. An empty list means the provider is unavailable."""

    secrets: dict[ProviderId, list[str]] = field(default_factory=dict)

    def for_provider(self, provider: ProviderId) -> list[str]:
        return list(self.secrets.get(provider, []))

    def counts(self) -> dict[str, int]:
        return {p.value: len(s) for p, s in self.secrets.items()}


def discover_keys(environ: Mapping[str, str], prefix: str) -> list[str]:
    """Numbered keys for one prefix, falling back to the bare name."""
    keys: list[str] = []
    for i in range(1, MAX_NUMBERED_KEYS + 1):
        value = (environ.get(f"{prefix}_{i}") or "").strip()
        if value and value not in keys:
            keys.append(value)

    if not keys:
        value = (environ.get(prefix) or "").strip()
        if value:
            keys.append(value)
    return keys


def load_credential_config(environ: Mapping[str, str] | None = None, env_file: str | None = ".env") -> CredentialConfig:
    """Build the CredentialConfig from an environment mapping.

    With `environ=None` the process environment is merged over `env_file`.
    """
    if environ is None:
        merged: dict[str, str] = {}
        if env_file:
            merged.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        merged.update(os.environ)
        environ = merged

    config = CredentialConfig()
    for provider, prefix in CREDENTIAL_PREFIXES.items():
        config.secrets[provider] = discover_keys(environ, prefix)

    logger.info(
        "Credentials loaded: %s",
        ", ".join(f"{name}={count}" for name, count in config.counts().items()),
    )
    return config
