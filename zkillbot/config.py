import copy
import os
from pathlib import Path
from typing import Any, Dict

import yaml

from zkillbot.errors import ConfigurationError

DEFAULT_CONFIG: Dict[str, Any] = {
    "discord": {
        "enabled": True,
        "bot_token_env": "DISCORD_BOT_TOKEN",
        "api_base": "https://discord.com/api/v10",
        "timeout_sec": 5,
        "queue_size": 256,
    },
    "zkillboard": {
        "ws_url": "wss://zkillboard.com/websocket/",
        "read_timeout_sec": 30,
        "open_timeout_sec": 10,
        "raw_queue_size": 256,
        "backoff": {
            "min_sec": 0.5,
            "max_sec": 300,
            "factor": 2,
            "jitter": True,
        },
    },
    "esi": {
        "base_url": "https://esi.evetech.net/latest",
        "user_agent": "zkillbot (https://github.com/andytsnowden/zkillbot)",
        "timeout_sec": 10,
        "max_search_results": 200,
        "max_search_results_soft": 10,
    },
    "commands": {
        "queue_size": 64,
    },
    "storage": {
        "path": "data/subscriptions.json",
    },
    "logging": {
        "level": "INFO",
        "log_to_file": True,
        "log_dir": "logs",
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, val in (override or {}).items():
        if isinstance(val, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], val)
        else:
            out[key] = val
    return out


def load_config(path: str | Path) -> Dict[str, Any]:
    """
    Load a YAML config file into a plain dict, filling gaps from DEFAULT_CONFIG.

    A missing file is written out with the defaults so operators have a
    template to edit.
    """
    p = Path(path)
    if not p.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("w", encoding="utf-8") as f:
            yaml.safe_dump(DEFAULT_CONFIG, f, sort_keys=False)
        return copy.deepcopy(DEFAULT_CONFIG)

    with p.open("r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"Config root must be a mapping: {p}")
    return _merge(DEFAULT_CONFIG, cfg)


def require_discord_token(cfg: Dict[str, Any]) -> str:
    env_name = str(cfg.get("discord", {}).get("bot_token_env", "DISCORD_BOT_TOKEN"))
    token = os.getenv(env_name, "").strip()
    if not token:
        raise ConfigurationError(f"Discord bot token missing. Set {env_name}.")
    return token
