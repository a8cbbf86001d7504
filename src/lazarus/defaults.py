"""Shared constants — env var names, default paths, resolvers.

Single source of truth for path resolution across all lazarus components.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

# ---------------------------------------------------------------------------
# Env var names
# ---------------------------------------------------------------------------

ENV_CONFIG = "LAZARUS_CONFIG"
ENV_STATE_DIR = "LAZARUS_STATE_DIR"
ENV_DOMAIN = "LAZARUS_DOMAIN"

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------

CONFIG_FILE_NAME = "lazarus.yaml"

# Project-local runtime directory: one subdirectory per domain + ops.jsonl
STATE_DIR_NAME = ".lazarus"

OPS_LOG_NAME = "ops.jsonl"

# ---------------------------------------------------------------------------
# Per-domain file names
# ---------------------------------------------------------------------------

STATE_FILE = "state.json"
RESOLUTION_LOG_FILE = "resolutions.jsonl"
RESOLUTION_ARCHIVE_FILE = "resolutions.archive.jsonl"
CLEAN_EXIT_MARKER = "clean_exit"
FRESH_START_MARKER = "fresh_start"
CONTINUATION_FILE = "continuation"
SUPERVISOR_STATUS_FILE = "supervisor.json"
INSTANCE_LOCK_FILE = "instance.lock"
BRIEF_FILE = "brief.md"
SUMMARY_FILE = "summary.json"
SUMMARY_ARCHIVE_DIR = "summaries"

_DOMAIN_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*$")


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def resolve_config_path(explicit: str | Path | None = None) -> Path:
    """Resolve config path: explicit > ENV_CONFIG > ./lazarus.yaml."""
    if explicit:
        return Path(explicit).expanduser()
    env = os.getenv(ENV_CONFIG)
    if env:
        return Path(env).expanduser()
    return Path.cwd() / CONFIG_FILE_NAME


def resolve_path(raw_value: str, base: Path) -> Path:
    """Resolve a possibly-relative path against a base directory."""
    path = Path(raw_value).expanduser()
    if not path.is_absolute():
        path = (base / path).resolve()
    return path


def validate_domain(domain: str) -> str:
    """Return domain unchanged, or raise ValueError if it is not a safe dir name."""
    if not domain or not _DOMAIN_RE.match(domain):
        raise ValueError(f"Invalid domain name: {domain!r}")
    return domain


def domain_dir(state_dir: Path, domain: str) -> Path:
    """Directory holding every file that belongs to one domain."""
    return state_dir / validate_domain(domain)
