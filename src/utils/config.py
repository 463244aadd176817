from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import yaml

DEFAULT_SETTINGS_PATH = Path("config/settings.yaml")


def load_yaml(path: Path | str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{p}: top-level YAML must be a mapping")
    return data


def load_settings(path: Path | str | None = None) -> Dict[str, Any]:
    """Repository settings (config/settings.yaml, or $STE_SETTINGS) with env overrides."""
    settings = load_yaml(path or os.getenv("STE_SETTINGS") or DEFAULT_SETTINGS_PATH)

    db_path = os.getenv("STE_DB_PATH")
    if db_path:
        settings.setdefault("database", {})["path"] = db_path

    webhook = os.getenv("DISCORD_WEBHOOK_URL")
    if webhook:
        dc = settings.setdefault("discord", {})
        dc["webhook"] = webhook
        dc.setdefault("enabled", True)

    tg_token = os.getenv("TELEGRAM_BOT_TOKEN")
    tg_chat = os.getenv("TELEGRAM_CHAT_ID")
    if tg_token and tg_chat:
        tg = settings.setdefault("telegram", {})
        tg.update({"token": tg_token, "chat_id": tg_chat})
        tg.setdefault("enabled", True)
    return settings
