import logging
import time
from typing import Any, Mapping

import requests

TIMEOUT_SEC = 5


def job_summary(job: str, fields: Mapping[str, Any]) -> str:
    """One-line batch job summary: "[job] a=1 | b=2"."""
    body = " | ".join(f"{k}={v}" for k, v in fields.items())
    return f"[{job}] {body}" if body else f"[{job}]"


def _with_site(settings: dict, message: str) -> str:
    site = settings.get("site_url") or (settings.get("site") or {}).get("url")
    if site and site not in message:
        return f"{message} | site: {site}"
    return message


def send_telegram(bot_token: str, chat_id: str, text: str) -> bool:
    if not (bot_token and chat_id):
        return False
    try:
        resp = requests.post(
            f"https://api.telegram.org/bot{bot_token}/sendMessage",
            data={"chat_id": chat_id, "text": text},
            timeout=TIMEOUT_SEC,
        )
    except requests.RequestException as e:
        logging.warning("telegram post error: %s", e)
        return False
    if not resp.ok:
        logging.warning("telegram rejected message (%s): %s", resp.status_code, resp.text)
    return bool(resp.ok)


def send_discord(webhook: str, message: str) -> bool:
    """Post to a Discord webhook; on 429 waits `retry_after` once and retries."""
    try:
        resp = requests.post(webhook, json={"content": message}, timeout=TIMEOUT_SEC)
        if resp.status_code == 429:
            wait = float(resp.json().get("retry_after", 1))
            logging.warning("discord webhook rate limited; retry in %.1fs", wait)
            time.sleep(wait + 0.1)
            resp = requests.post(webhook, json={"content": message}, timeout=TIMEOUT_SEC)
    except requests.RequestException:
        logging.exception("discord webhook post failed")
        return False
    if not resp.ok:
        logging.warning("discord rejected message (%s): %s", resp.status_code, resp.text)
    return bool(resp.ok)


def maybe_notify(settings: dict, message: str) -> bool:
    """Discord first, Telegram as fallback. True if either channel accepted the message."""
    if not isinstance(settings, dict):
        return False
    message = _with_site(settings, message)
    dc = settings.get("discord") or {}
    if dc.get("enabled") and dc.get("webhook") and send_discord(dc["webhook"], message):
        return True
    tg = settings.get("telegram") or {}
    return bool(tg.get("enabled")) and send_telegram(tg.get("token"), tg.get("chat_id"), message)
