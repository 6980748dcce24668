import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

log = logging.getLogger(__name__)

DEFAULT_PROVIDERS = (
    "anthropic",
    "google",
    "x-ai",
    "deepseek",
    "meta-llama",
    "openai",
)
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass(frozen=True)
class CurationSettings:
    """Thresholds applied when the model catalog is refreshed."""

    max_age_days: float = 180.0
    min_context_length: int = 100_000
    max_prompt_price: float = 0.000015
    max_completion_price: float = 0.000075
    max_image_price: float = 0.024
    providers: Tuple[str, ...] = DEFAULT_PROVIDERS
    blocked_endpoint_providers: Tuple[str, ...] = ("OpenAI",)
    maturity_markers: Tuple[str, ...] = ("preview", "experimental", "beta")
    choice_limit: int = 25


@dataclass(frozen=True)
class Settings:
    discord_token: str
    openrouter_api_key: str
    default_model: Optional[str] = None
    default_prompt: Optional[str] = None
    db_path: str = "db.sqlite"
    guild_id: Optional[int] = None
    refresh_seconds: float = 3600.0
    max_reply_depth: int = 50
    thread_history_limit: int = 100
    base_url: str = OPENROUTER_BASE_URL
    curation: CurationSettings = field(default_factory=CurationSettings)


def _split_list(raw: Any) -> Tuple[str, ...]:
    if isinstance(raw, (list, tuple)):
        items = [str(item or "").strip() for item in raw]
    else:
        items = [part.strip() for part in str(raw or "").split(",")]
    return tuple(item for item in items if item)


def _coerce(value: Any, current: Any) -> Any:
    if isinstance(current, tuple):
        return _split_list(value)
    if isinstance(current, int):
        return int(float(value))
    if isinstance(current, float):
        return float(value)
    return value


def _overlay(base: CurationSettings, values: Dict[str, Any], origin: str) -> CurationSettings:
    known = {f.name for f in fields(CurationSettings)}
    changes: Dict[str, Any] = {}
    for key, value in values.items():
        name = str(key).strip().lower()
        if name not in known:
            log.warning("ignoring unknown curation key %r from %s", key, origin)
            continue
        if value is None or value == "":
            continue
        try:
            changes[name] = _coerce(value, getattr(base, name))
        except (TypeError, ValueError) as exc:
            log.warning("invalid curation value for %s from %s: %s", name, origin, exc)
    return replace(base, **changes) if changes else base


def load_curation_file(path: Path, base: Optional[CurationSettings] = None) -> CurationSettings:
    base = base or CurationSettings()
    if not path.exists():
        log.warning("catalog config %s not found; using defaults", path)
        return base
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        log.warning("failed to read catalog config %s: %s", path, exc)
        return base
    if not isinstance(raw, dict):
        return base
    return _overlay(base, raw, str(path))


_CURATION_ENV = {
    "MODEL_MAX_AGE_DAYS": "max_age_days",
    "MIN_CONTEXT_LENGTH": "min_context_length",
    "MAX_PROMPT_PRICE": "max_prompt_price",
    "MAX_COMPLETION_PRICE": "max_completion_price",
    "MAX_IMAGE_PRICE": "max_image_price",
    "MODEL_PROVIDERS": "providers",
}


def load_settings(env: Optional[Dict[str, str]] = None) -> Settings:
    """Build settings from the environment; ``SystemExit`` when credentials are missing."""

    env = dict(os.environ) if env is None else env
    discord_token = env.get("DISCORD_TOKEN")
    api_key = env.get("OPENROUTER_API_KEY")
    if not discord_token or not api_key:
        raise SystemExit("Missing DISCORD_TOKEN or OPENROUTER_API_KEY.")

    curation = CurationSettings()
    config_path = env.get("CATALOG_CONFIG")
    if config_path:
        curation = load_curation_file(Path(config_path), curation)
    env_values = {key: env[var] for var, key in _CURATION_ENV.items() if env.get(var)}
    curation = _overlay(curation, env_values, "environment")

    guild_raw = env.get("DISCORD_GUILD_ID", "")
    guild_id = int(guild_raw) if guild_raw.isdigit() else None

    return Settings(
        discord_token=discord_token,
        openrouter_api_key=api_key,
        default_model=env.get("DEFAULT_MODEL") or None,
        default_prompt=env.get("DEFAULT_PROMPT") or None,
        db_path=env.get("DB_PATH", "db.sqlite"),
        guild_id=guild_id,
        refresh_seconds=float(env.get("CATALOG_REFRESH_SECONDS", "3600")),
        max_reply_depth=int(env.get("MAX_REPLY_DEPTH", "50")),
        thread_history_limit=int(env.get("THREAD_HISTORY_LIMIT", "100")),
        curation=curation,
    )
