"""
Outcome notifications.

The notifier renders one message per outcome and hands it to every
configured destination. Delivery is best-effort: a failing destination is
logged and skipped, and nothing here ever raises into the build pipeline.
With no destinations configured, notify() does nothing.
"""

from __future__ import annotations

import html
from typing import Iterable, Protocol

import httpx
from loguru import logger

from deployd.errors import NotificationError
from deployd.models import Outcome, Task


TELEGRAM_API_URL = "https://api.telegram.org"
TELEGRAM_MAX_LENGTH = 4096
TIMEOUT = 10.0


def render_message(task: Task, outcome: Outcome) -> str:
    """HTML message for Telegram's parse_mode=HTML."""
    status = "✅ Deployed" if outcome.ok else "❌ Deploy failed"
    lines = [
        f"<b>{status}</b> {html.escape(task.owner)}/"
        f"{html.escape(task.repository)}#{html.escape(task.branch)}",
        f"Commit: <code>{html.escape(task.commit_hash)}</code>",
    ]
    if not outcome.ok:
        lines.append(f"<pre>{html.escape(outcome.detail)}</pre>")
    text = "\n".join(lines)
    if len(text) > TELEGRAM_MAX_LENGTH:
        # cutting inside <pre> would leave broken markup
        text = "\n".join(lines[:2]) + "\n<i>(details truncated, see logs)</i>"
    return text


class Destination(Protocol):
    name: str

    async def send(self, text: str) -> None:
        """Deliver text to every target. Must not raise."""


class TelegramDestination:
    """Send messages to a fixed set of Telegram chats via the Bot API."""

    name = "telegram"

    def __init__(self, token: str, chats: Iterable[int],
                 client: httpx.AsyncClient | None = None,
                 api_url: str = TELEGRAM_API_URL):
        self._url = f"{api_url.rstrip('/')}/bot{token}/sendMessage"
        self.chats = list(chats)
        self._client = client or httpx.AsyncClient(timeout=TIMEOUT)

    def __repr__(self) -> str:
        # never leak the token into logs
        return f"TelegramDestination(chats={self.chats!r})"

    async def send_to(self, chat_id: int, text: str) -> None:
        """Send to one chat. Raises NotificationError."""
        try:
            resp = await self._client.post(self._url, json={
                "chat_id": chat_id,
                "text": text,
                "parse_mode": "HTML",
            })
        except httpx.HTTPError as e:
            raise NotificationError(
                f"failed to send request to Telegram: {type(e).__name__}"
            ) from e
        if resp.status_code >= 400:
            raise NotificationError(
                f"Telegram API returned error: {resp.status_code}\n{resp.text}")

    async def send(self, text: str) -> None:
        for chat_id in self.chats:
            try:
                await self.send_to(chat_id, text)
            except NotificationError as e:
                logger.error("Failed sending Telegram notification to {}: {}",
                             chat_id, e)

    async def aclose(self) -> None:
        await self._client.aclose()


class Notifier:
    def __init__(self, destinations: Iterable[Destination] = ()):
        self.destinations = list(destinations)

    @property
    def enabled(self) -> bool:
        return bool(self.destinations)

    async def notify(self, task: Task, outcome: Outcome) -> None:
        if not self.destinations:
            return
        text = render_message(task, outcome)
        for dest in self.destinations:
            try:
                await dest.send(text)
            except Exception as e:
                # contain anything a destination lets through
                logger.error("Notification via {} failed: {}", dest.name, e)

    async def aclose(self) -> None:
        for dest in self.destinations:
            close = getattr(dest, "aclose", None)
            if close is not None:
                await close()


def notifier_from_settings(settings, client: httpx.AsyncClient | None = None
                           ) -> Notifier:
    """Telegram is enabled only when both a token and groups are set."""
    destinations: list[Destination] = []
    token = settings.telegram_token
    if token is not None and settings.telegram_groups:
        destinations.append(TelegramDestination(
            token.get_secret_value(), settings.telegram_groups, client=client))
    elif token is not None or settings.telegram_groups:
        logger.warning("Telegram notifications need both ADM_TELEGRAM_TOKEN "
                       "and ADM_TELEGRAM_GROUPS; notifications are disabled")
    return Notifier(destinations)
