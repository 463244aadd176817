from unittest.mock import MagicMock, patch

import requests

from src.utils import notifier


def resp(ok=True, status=200, payload=None):
    r = MagicMock()
    r.ok = ok
    r.status_code = status
    r.text = "body"
    r.json.return_value = payload or {}
    return r


class TestNotifier:
    def test_disabled_channels_send_nothing(self):
        with patch.object(notifier.requests, "post") as post:
            assert notifier.maybe_notify({"discord": {"enabled": False}}, "hi") is False
        post.assert_not_called()

    def test_discord_first(self):
        settings = {"discord": {"enabled": True, "webhook": "https://discord.test/hook"}, "site_url": "https://ste.test"}
        with patch.object(notifier.requests, "post", return_value=resp()) as post:
            assert notifier.maybe_notify(settings, "done") is True
        assert post.call_args.kwargs["json"] == {"content": "done | site: https://ste.test"}

    def test_discord_rate_limit_retries_once(self):
        with patch.object(notifier.requests, "post", side_effect=[resp(False, 429, {"retry_after": 0.5}), resp()]) as post, \
                patch.object(notifier.time, "sleep") as sleep:
            assert notifier.send_discord("https://discord.test/hook", "x") is True
        assert post.call_count == 2
        sleep.assert_called_once()

    def test_falls_back_to_telegram(self):
        settings = {
            "discord": {"enabled": True, "webhook": "https://discord.test/hook"},
            "telegram": {"enabled": True, "token": "t", "chat_id": "c"},
        }
        with patch.object(notifier.requests, "post", side_effect=[requests.ConnectionError("down"), resp()]) as post:
            assert notifier.maybe_notify(settings, "done") is True
        assert "api.telegram.org/bott/sendMessage" in post.call_args.args[0]

    def test_job_summary_line(self):
        assert notifier.job_summary("prices", {"SOXL": 3, "TQQQ": 0}) == "[prices] SOXL=3 | TQQQ=0"
        assert notifier.job_summary("precompute", {}) == "[precompute]"
