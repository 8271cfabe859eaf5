"""Single source of truth for all configuration and secrets.

All modules import from here - never from os.environ directly.

Values are read from secrets/internal.env (or its SOPS-encrypted twin when
EMAILCAT_USE_SOPS=true). Process environment variables take precedence so
that a scheduler can override single keys without touching the file.
"""

import os
from pathlib import Path

from emailcat.secrets import load_dotenv_fallback, load_secrets

PROJECT_ROOT = Path(__file__).resolve().parent.parent

USE_SOPS = os.environ.get("EMAILCAT_USE_SOPS", "false").lower() == "true"


def _load(scope: str) -> dict[str, str | None]:
    """Load secrets for a given scope, overlaid with the process environment."""
    if USE_SOPS:
        values = load_secrets(PROJECT_ROOT / f"secrets/{scope}.env.enc")
    else:
        values = load_dotenv_fallback(PROJECT_ROOT / f"secrets/{scope}.env")
    overrides = {k: v for k, v in os.environ.items() if k in _KNOWN_KEYS}
    return {**values, **overrides}


_KNOWN_KEYS = frozenset(
    {
        "DATABASE_PATH",
        "AUDIT_LOG_PATH",
        "MAX_EMAILS_PER_RUN",
        "RUN_TIMEOUT_SECONDS",
        "IMAP_TIMEOUT_SECONDS",
        "LLM_TIMEOUT_SECONDS",
        "LLM_PROVIDER",
        "LLM_API_KEY",
        "LLM_MODEL",
        "LLM_FALLBACK_ONLY",
        "OLLAMA_BASE_URL",
    }
)

_internal = _load("internal")

# --- Storage ---
DATABASE_PATH: str = _internal.get("DATABASE_PATH") or str(PROJECT_ROOT / "data" / "emailcat.db")
AUDIT_LOG_PATH: str = _internal.get("AUDIT_LOG_PATH") or str(PROJECT_ROOT / "data" / "audit.jsonl")

# --- Processing ---
MAX_EMAILS_PER_RUN: int = int(_internal.get("MAX_EMAILS_PER_RUN") or "50")
RUN_TIMEOUT_SECONDS: float = float(_internal.get("RUN_TIMEOUT_SECONDS") or "300")
IMAP_TIMEOUT_SECONDS: float = float(_internal.get("IMAP_TIMEOUT_SECONDS") or "30")

# --- LLM (optional) ---
LLM_TIMEOUT_SECONDS: float = float(_internal.get("LLM_TIMEOUT_SECONDS") or "30")
LLM_FALLBACK_ONLY: bool = (_internal.get("LLM_FALLBACK_ONLY") or "true").lower() == "true"
OLLAMA_BASE_URL: str = _internal.get("OLLAMA_BASE_URL") or "http://localhost:11434"

# Snapshot handed to resolve_llm_config(); never mutated at runtime.
LLM_ENV: dict[str, str | None] = {
    "LLM_PROVIDER": _internal.get("LLM_PROVIDER"),
    "LLM_API_KEY": _internal.get("LLM_API_KEY"),
    "LLM_MODEL": _internal.get("LLM_MODEL"),
    "OLLAMA_BASE_URL": OLLAMA_BASE_URL,
}
