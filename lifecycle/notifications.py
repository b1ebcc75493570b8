from __future__ import annotations

import time
from typing import Any, Callable, Protocol

from .cache import RoundStatusCache
from .config import LifecycleConfig
from .errors import NotificationError
from .models import (
    LAUNCH,
    LAUNCH_WARNING,
    MAINTENANCE,
    NOTIFY_FAILED,
    NOTIFY_SENT,
    PRELAUNCH,
    PREFLIGHT,
    WRAPUP,
    Round,
)

Enricher = Callable[[str, Round, str], str]

RETRY_DELAY_SECONDS = 5

TEMPLATES: dict[str, str] = {
    PRELAUNCH: ":calendar: *{campaign_name}* round {round_number} launches at {scheduled_at} to {recipient_count} recipients.",
    PREFLIGHT: ":white_check_mark: Pre-flight passed for *{campaign_name}* round {round_number}: list {list_id} verified, {recipient_count} recipients.",
    LAUNCH_WARNING: ":hourglass_flowing_sand: *{campaign_name}* round {round_number} launches in 15 minutes.",
    LAUNCH: ":rocket: *{campaign_name}* round {round_number} is live (provider campaign {external_campaign_id}).",
    WRAPUP: ":bar_chart: Wrap-up for *{campaign_name}* round {round_number}: {delivered} delivered, {opened} opened, {clicked} clicked, {bounced} bounced.",
    MAINTENANCE: ":broom: List maintenance for *{campaign_name}* after round {round_number}: {suppressed_count} suppressed, {moves_applied} moved.",
}

ALERT_TEMPLATE = ":rotating_light: *{campaign_name}* round {round_number} (`{round_id}`) step `{stage}` needs attention: {reason}"


class ChatSink(Protocol):
    def post_message(self, channel: str, text: str, blocks: list[dict[str, Any]] | None = None) -> str: ...


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return "n/a"


def _context(rnd: Round, content: dict[str, Any] | None) -> dict[str, Any]:
    values = _Defaults(rnd.to_dict())
    values["round_id"] = rnd.id
    values["scheduled_at"] = rnd.scheduled_at.strftime("%Y-%m-%d %H:%M UTC")
    values.update(rnd.metrics or {})
    values.update(content or {})
    return values


def render_blocks(title: str, text: str, fields: dict[str, Any] | None = None) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": title[:150]}},
        {"type": "section", "text": {"type": "mrkdwn", "text": text}},
    ]
    if fields:
        blocks.append(
            {
                "type": "section",
                "fields": [{"type": "mrkdwn", "text": f"*{key}*\n{value}"} for key, value in list(fields.items())[:10]],
            }
        )
    return blocks


class NotificationDispatcher:
    def __init__(
        self,
        chat: ChatSink | None,
        store: Any,
        config: LifecycleConfig | None = None,
        enricher: Enricher | None = None,
        sleep: Callable[[float], None] = time.sleep,
        cache: RoundStatusCache | None = None,
    ) -> None:
        self.chat = chat
        self.store = store
        self.config = config or LifecycleConfig()
        self.enricher = enricher
        self.sleep = sleep
        self.cache = cache

    def render(self, rnd: Round, stage: str, content: dict[str, Any] | None = None) -> tuple[str, list[dict[str, Any]]]:
        text = TEMPLATES[stage].format_map(_context(rnd, content))
        if self.enricher is not None:
            try:
                enriched = self.enricher(stage, rnd, text)
            except Exception:
                enriched = ""
            if isinstance(enriched, str) and enriched.strip():
                text = enriched
        title = f"{rnd.campaign_name} round {rnd.round_number}: {stage.replace('_', ' ')}"
        fields = {"Recipients": rnd.recipient_count, "List": rnd.list_id}
        if content:
            fields.update({key: value for key, value in content.items() if isinstance(value, (str, int, float))})
        return text, render_blocks(title, text, fields)

    def _post(self, channel: str, text: str, blocks: list[dict[str, Any]]) -> tuple[str, str]:
        if self.chat is None:
            return "", "chat_not_configured"
        last_error = ""
        attempts = max(1, self.config.notify_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return self.chat.post_message(channel, text, blocks), ""
            except NotificationError as exc:
                last_error = str(exc)
            if attempt < attempts:
                self.sleep(RETRY_DELAY_SECONDS * attempt)
        return "", last_error

    def notify(self, rnd: Round, stage: str, content: dict[str, Any] | None = None, gating: bool = False) -> dict[str, Any]:
        """Post the step's message and record the delivery status on the round.

        Informational steps never raise; a ``gating`` call re-raises the
        final ``NotificationError``.
        """
        text, blocks = self.render(rnd, stage, content)
        channel = rnd.notification_channel or self.config.campaign_channel
        ts, error = self._post(channel, text, blocks)
        status = NOTIFY_SENT if not error else NOTIFY_FAILED
        self.store.set_notification_status(rnd.id, stage, status)
        if self.cache is not None:
            self.cache.invalidate(rnd.id)
        if error and gating:
            raise NotificationError(error)
        return {"status": status, "channel": channel, "ts": ts, "error": error}

    def alert(self, rnd: Round, stage: str, reason: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
        text = ALERT_TEMPLATE.format_map(_context(rnd, {"stage": stage, "reason": reason}))
        title = f"ALERT {rnd.campaign_name} round {rnd.round_number}"
        fields: dict[str, Any] = {"Round": rnd.id, "Step": stage, "Status": rnd.status}
        fields.update(details or {})
        ts, error = self._post(self.config.alert_channel, text, render_blocks(title, text, fields))
        return {"status": NOTIFY_SENT if not error else NOTIFY_FAILED, "channel": self.config.alert_channel, "ts": ts, "error": error}
