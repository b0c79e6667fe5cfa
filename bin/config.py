"""Dendro configuration: env-driven Config, config.yaml loading, provider registry, CLI args."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


# ---------------------------------------------------------------------------
# Configuration dataclass
# ---------------------------------------------------------------------------
@dataclass
class Config:
    """Runtime configuration for the Dendro server process."""

    state_file: Path | None  # JSONL state location; None keeps everything in memory.
    activity_file: Path | None = None  # Append-only activity log; None disables it.
    config_path: Path = field(default_factory=lambda: _PROJECT_ROOT / "config.yaml")
    bind_host: str = "127.0.0.1"  # Local-only by default.
    bind_port: int = 8899  # Local port for browser/UI traffic.
    timeout_s: float = 120.0  # Network timeout for provider requests.
    url_timeout_s: float = 8.0  # Per-request timeout for URL scraping.
    max_attachments: int = 5  # Attachments accepted per turn.
    max_attachment_bytes: int = 200 * 1024  # Raw size cap per attachment.
    default_user: str = "local"  # Acting user when no X-Dendro-User header is sent.
    reject_symlinks: bool = True  # Refuse to read or write a symlinked state file.
    max_views: int = 64  # Session tree views kept in memory; least recently used are dropped.
    allowed_origins: set = field(default_factory=lambda: {
        "http://127.0.0.1:8899", "http://localhost:8899"
    })


def _env_bool(name: str, default: bool) -> bool:
    """Read a permissive boolean env var with a default fallback."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_path(name: str, default: str) -> Path | None:
    """Resolve a path env var; an empty value means "disabled"."""
    raw = os.environ.get(name, default).strip()
    if not raw:
        return None
    return Path(raw).expanduser().resolve()


def load_config() -> Config:
    """Build Config from environment variables with safe defaults."""
    port = int(os.environ.get("DENDRO_BIND_PORT", "8899"))
    allowed_origins_raw = os.environ.get(
        "DENDRO_ALLOWED_ORIGINS",
        f"http://127.0.0.1:{port},http://localhost:{port}",
    )
    allowed_origins = {v.strip() for v in allowed_origins_raw.split(",") if v.strip()}

    return Config(
        state_file=_env_path("DENDRO_STATE_FILE", str(Path.cwd() / "dendro.jsonl")),
        activity_file=_env_path("DENDRO_ACTIVITY_FILE", str(Path.cwd() / "activity.jsonl")),
        config_path=Path(os.environ.get("DENDRO_CONFIG", str(_PROJECT_ROOT / "config.yaml"))).expanduser(),
        bind_host=os.environ.get("DENDRO_BIND_HOST", "127.0.0.1"),
        bind_port=port,
        timeout_s=float(os.environ.get("DENDRO_TIMEOUT_S", "120")),
        url_timeout_s=float(os.environ.get("DENDRO_URL_TIMEOUT_S", "8")),
        max_attachments=int(os.environ.get("DENDRO_MAX_ATTACHMENTS", "5")),
        max_attachment_bytes=int(os.environ.get("DENDRO_MAX_ATTACHMENT_BYTES", str(200 * 1024))),
        default_user=os.environ.get("DENDRO_USER", "local").strip() or "local",
        reject_symlinks=_env_bool("DENDRO_REJECT_SYMLINKS", True),
        max_views=max(1, int(os.environ.get("DENDRO_MAX_VIEWS", "64"))),
        allowed_origins=allowed_origins,
    )


# ---------------------------------------------------------------------------
# config.yaml loader
# ---------------------------------------------------------------------------
_CONFIG_YAML_STATUS = ""  # human-readable load status for startup banner


def _load_config_yaml(cfg_path: Path | None = None) -> Dict[str, Any]:
    """Load config.yaml; *cfg_path* defaults to the repo root copy."""
    global _CONFIG_YAML_STATUS
    if cfg_path is None:
        cfg_path = _PROJECT_ROOT / "config.yaml"
    if not cfg_path.exists():
        _CONFIG_YAML_STATUS = f"not found at {cfg_path}"
        return {}
    try:
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _CONFIG_YAML_STATUS = f"parse error: {exc}"
        return {}
    if not isinstance(data, dict):
        _CONFIG_YAML_STATUS = f"not a mapping at {cfg_path}"
        return {}
    if data:
        _CONFIG_YAML_STATUS = f"loaded ({len(data)} keys) from {cfg_path}"
    else:
        _CONFIG_YAML_STATUS = f"empty at {cfg_path}"
    return data


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------
def _build_providers(cfg_yaml: Dict[str, Any] | None = None) -> Dict[str, Dict[str, Any]]:
    """Construct provider registry from defaults + config.yaml overrides."""
    yaml_providers = (cfg_yaml or {}).get("providers", {}) or {}

    providers: Dict[str, Dict[str, Any]] = {
        "gemini": {
            "name": "Google Gemini",
            "url": "https://generativelanguage.googleapis.com/v1beta/models",
            "api_key": os.getenv("GEMINI_API_KEY", ""),
            "default_model": os.getenv("GEMINI_MODEL", "gemini-2.0-flash-lite"),
        },
        "openrouter": {
            "name": "OpenRouter",
            "url": "https://openrouter.ai/api/v1",
            "api_key": os.getenv("OPENROUTER_API_KEY", ""),
            "default_model": os.getenv("OPENROUTER_MODEL", "openai/gpt-4o-mini"),
            "referer": "https://chat-tree.app",
            "app_title": "Chat Tree",
        },
    }

    # Merge config.yaml values (YAML fills gaps; env vars still win)
    for key, ycfg in yaml_providers.items():
        if key not in providers or not isinstance(ycfg, dict):
            continue
        pcfg = providers[key]
        for opt in ("name", "url", "referer", "app_title"):
            if ycfg.get(opt):
                pcfg[opt] = ycfg[opt]
        if ycfg.get("default_model") and not os.getenv(f"{key.upper()}_MODEL"):
            pcfg["default_model"] = ycfg["default_model"]
        if ycfg.get("api_key") and not pcfg.get("api_key"):
            pcfg["api_key"] = ycfg["api_key"]

    return providers


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------
DEFAULT_MODEL = "openrouter/deepseek/deepseek-chat-v3-0324"


def _derive_prefs(cfg_yaml: dict) -> dict:
    """Derive the flat per-user chat prefs dict from a parsed config.yaml dict."""
    chat = cfg_yaml.get("chat", {}) if isinstance(cfg_yaml, dict) else {}
    if not isinstance(chat, dict):
        chat = {}
    return {
        "system_prompt": str(chat.get("system_prompt") or ""),
        "streaming": bool(chat.get("streaming", True)),
        "url_fetch_same_domain": bool(chat.get("url_fetch_same_domain", False)),
        "default_model": chat.get("default_model") or DEFAULT_MODEL,
        "default_verbosity": chat.get("default_verbosity") or "normal",
        "root_verbosity": chat.get("root_verbosity") or "detailed",
        "branch_model": chat.get("branch_model") or None,
        "branch_verbosity": chat.get("branch_verbosity") or None,
    }


# ---------------------------------------------------------------------------
# Module-level mode flags (set by main() at startup)
# ---------------------------------------------------------------------------
DEBUG_MODE: bool = False


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv: list | None = None) -> argparse.Namespace:
    """Parse command-line arguments for serve/seed execution modes."""
    parser = argparse.ArgumentParser(description="Dendro tree-structured chat server")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug logging")
    parser.add_argument("--url-prefix", default="",
                        help="URL path prefix (e.g. /dendro) for reverse-proxy deployments")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("serve", help="Run the Flask server (default)")
    seed_parser = sub.add_parser("seed", help="Load an example tree into the state file")
    seed_parser.add_argument("--user", default=None, help="Owner of the example tree")
    return parser.parse_args(argv)
