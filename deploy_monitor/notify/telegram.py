from __future__ import annotations

import json
from dataclasses import dataclass

import httpx

from .base import DeliveryStatus, DeliveryResult, NotificationChannel, NotificationMessage


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str


TELEGRAM_MAX_MESSAGE_LEN = 3900


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """Pack whole lines into chunks of at most ``max_len``; over-long lines are hard-cut."""
    limit = max(1, int(max_len))
    chunks: list[str] = []
    current = ""
    for line in (text or "").strip().splitlines():
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) <= limit:
            current = candidate
        else:
            chunks.append(current)
            current = line
    if current or not chunks:
        chunks.append(current)
    return [c.strip() for c in chunks if c.strip()] or [""]


def redact(text: str, token: str) -> str:
    return text.replace(token, "<redacted>") if token else text


async def send_telegram_message(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    text: str,
    *,
    timeout_seconds: float = 15.0,
) -> tuple[bool, dict]:
    url = f"https://api.telegram.org/bot{config.bot_token}/sendMessage"
    payload = {"chat_id": config.chat_id, "text": text, "disable_web_page_preview": True}
    try:
        resp = await client.post(url, json=payload, timeout=timeout_seconds)
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        return False, {"ok": False, "error": redact(f"{type(e).__name__}: {e}", config.bot_token)}
    if not isinstance(data, dict):
        return False, {"ok": False, "error": f"unexpected response (HTTP {resp.status_code})"}
    return bool(data.get("ok")), data


def redact_telegram_response(data: dict) -> str:
    safe = {"ok": data.get("ok")}
    if isinstance(data.get("result"), dict):
        safe["result"] = {"message_id": data["result"].get("message_id")}
    for key in ("error", "description"):
        if data.get(key):
            safe[key] = data.get(key)
    return json.dumps(safe, ensure_ascii=False)


class TelegramChannel(NotificationChannel):
    name = "telegram"

    def __init__(
        self,
        config: TelegramConfig | None,
        *,
        timeout_seconds: float = 15.0,
        max_len: int = TELEGRAM_MAX_MESSAGE_LEN,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.config = config
        self.max_len = max_len

    async def send(self, message: NotificationMessage, client: httpx.AsyncClient) -> DeliveryResult:
        if self.config is None or not self.config.bot_token or not self.config.chat_id:
            return self._result(DeliveryStatus.SKIPPED, "bot token or chat id not configured")

        parts = split_telegram_message(message.as_text(), max_len=self.max_len)
        for i, part in enumerate(parts, start=1):
            ok, resp = await send_telegram_message(client, self.config, part, timeout_seconds=self.timeout_seconds)
            if not ok:
                return self._result(
                    DeliveryStatus.FAILED,
                    f"part {i}/{len(parts)}: {redact_telegram_response(resp)}",
                )
        return self._result(DeliveryStatus.SENT, f"{len(parts)} message(s)")
