"""Runtime settings and user-editable config.

Settings come from the environment (a `.env` file at the repo root is
loaded first). The text and image model choices can be changed at runtime;
those edits are stored in {data_dir}/config.json and merged over the
environment defaults by `get_config()`.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel

ROOT = Path(__file__).parent.parent
load_dotenv(ROOT / ".env")

DEFAULT_DATA_DIR = ROOT / "data"

# Only these keys may be changed through update_config().
_EDITABLE = ("text_model", "image_model")


class Settings(BaseModel):
    api_key: str = ""
    api_base: str = "https://api.openai.com/v1"
    text_model: str = "gpt-4o-mini"
    image_model: str = "gpt-image-1"
    request_timeout: float = 60.0
    text_interval: float = 1.0
    image_interval: float = 4.0
    image_interval_cap: float = 30.0
    rate_limit_window: float = 8.0
    aterna_base: str = ""
    aterna_token: str = ""
    aterna_mirror_audit: bool = False
    player_id: str = "p"
    data_dir: Path = DEFAULT_DATA_DIR


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def load_settings(data_dir: Path | None = None) -> Settings:
    """Build Settings from the environment, then overlay stored config."""
    defaults = Settings()
    settings = Settings(
        api_key=os.getenv("QMUD_API_KEY", ""),
        api_base=os.getenv("QMUD_API_BASE", defaults.api_base),
        text_model=os.getenv("QMUD_TEXT_MODEL", defaults.text_model),
        image_model=os.getenv("QMUD_IMAGE_MODEL", defaults.image_model),
        request_timeout=_env_float("QMUD_REQUEST_TIMEOUT", defaults.request_timeout),
        text_interval=_env_float("QMUD_TEXT_INTERVAL", defaults.text_interval),
        image_interval=_env_float("QMUD_IMAGE_INTERVAL", defaults.image_interval),
        rate_limit_window=_env_float("QMUD_RATE_LIMIT_WINDOW", defaults.rate_limit_window),
        aterna_base=os.getenv("ATERNA_BASE", ""),
        aterna_token=os.getenv("ATERNA_TOKEN", ""),
        aterna_mirror_audit=os.getenv("ATERNA_MIRROR_AUDIT", "") in ("1", "true", "yes"),
        player_id=os.getenv("QMUD_PLAYER_ID", defaults.player_id),
        data_dir=data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR))),
    )
    stored = get_config(settings.data_dir)
    return settings.model_copy(update=stored)


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def get_config(data_dir: Path) -> dict[str, Any]:
    """Read stored user config. Unknown keys are ignored."""
    path = _config_path(data_dir)
    if not path.is_file():
        return {}
    stored = json.loads(path.read_text())
    return {k: stored[k] for k in _EDITABLE if isinstance(stored.get(k), str) and stored[k]}


def update_config(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge editable fields into stored config and persist. Returns stored config."""
    config = get_config(data_dir)
    for key in _EDITABLE:
        value = fields.get(key)
        if isinstance(value, str) and value:
            config[key] = value
    data_dir.mkdir(parents=True, exist_ok=True)
    _config_path(data_dir).write_text(json.dumps(config, indent=2))
    return config
