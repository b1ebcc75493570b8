"""HTTP clients for the email provider agent and the Slack chat sink."""

from __future__ import annotations

from typing import Any

import requests

from .errors import NotificationError, ProviderRequestError

DEFAULT_TIMEOUT_SECONDS = 20
SLACK_API_URL = "https://slack.com/api"


class ProviderClient:
    """Bulk email provider reached through its agent service (JSON over HTTP).

    Every failure surfaces as ``ProviderRequestError``. For the one
    non-idempotent call, ``trigger_send``, any failure after the request may
    have reached the provider is flagged ``acknowledged=True`` so the caller
    never repeats it blindly.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if not base_url:
            raise ValueError("PROVIDER_API_URL is required for ProviderClient.")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json", "User-Agent": "campaign-lifecycle/1.0"})
        if api_token:
            self.session.headers["Authorization"] = f"Bearer {api_token}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        idempotent: bool = True,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.exceptions.ConnectTimeout as exc:
            raise ProviderRequestError(f"{method} {path}: connect timeout") from exc
        except requests.exceptions.RequestException as exc:
            # The request may have been delivered before the transport failed.
            raise ProviderRequestError(
                f"{method} {path}: {type(exc).__name__}",
                acknowledged=not idempotent,
            ) from exc
        if resp.status_code >= 400:
            body = resp.text[:500]
            acknowledged = not idempotent and resp.status_code >= 500
            raise ProviderRequestError(
                f"{method} {path}: HTTP {resp.status_code}: {body}",
                acknowledged=acknowledged,
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        try:
            parsed = resp.json()
        except ValueError as exc:
            raise ProviderRequestError(
                f"{method} {path}: invalid JSON response",
                acknowledged=not idempotent,
                status_code=resp.status_code,
            ) from exc
        return parsed if isinstance(parsed, dict) else {"data": parsed}

    def create_draft(self, list_id: str, subject: str, sender_email: str, title: str) -> str:
        data = self._request(
            "POST",
            "/campaigns/drafts",
            payload={"list_id": list_id, "subject": subject, "sender_email": sender_email, "title": title},
        )
        draft_id = str(data.get("draft_id") or data.get("id") or "")
        if not draft_id:
            raise ProviderRequestError("create_draft returned no draft id")
        return draft_id

    def get_draft(self, draft_id: str) -> dict[str, Any]:
        return self._request("GET", f"/campaigns/drafts/{draft_id}")

    def trigger_send(self, draft_id: str) -> str:
        data = self._request("POST", f"/campaigns/drafts/{draft_id}/send", idempotent=False)
        external_id = str(data.get("campaign_id") or data.get("id") or "")
        if not external_id:
            # Accepted without an id: the send may be live.
            raise ProviderRequestError("trigger_send returned no campaign id", acknowledged=True)
        return external_id

    def get_bounce_events(self, external_id: str) -> list[dict[str, Any]]:
        data = self._request("GET", f"/campaigns/{external_id}/bounces")
        return list(data.get("bounces") or data.get("data") or [])

    def get_delivery_metrics(self, external_id: str) -> dict[str, Any]:
        return self._request("GET", f"/campaigns/{external_id}/statistics")

    def list_contacts(self, list_id: str) -> list[str]:
        """Contact ids of ``list_id`` in the order they were added."""
        data = self._request("GET", f"/lists/{list_id}/contacts")
        rows = data.get("contacts") or data.get("data") or []
        return [str(row["contact_id"]) if isinstance(row, dict) else str(row) for row in rows]

    def add_contacts(self, list_id: str, contact_ids: list[str]) -> None:
        if contact_ids:
            self._request("POST", f"/lists/{list_id}/contacts", payload={"action": "add", "contact_ids": contact_ids})

    def remove_contacts(self, list_id: str, contact_ids: list[str]) -> None:
        if contact_ids:
            self._request("POST", f"/lists/{list_id}/contacts", payload={"action": "remove", "contact_ids": contact_ids})


class ChatClient:
    """Slack Web API ``chat.postMessage`` on a shared session."""

    def __init__(
        self,
        bot_token: str,
        session: requests.Session | None = None,
        base_url: str = SLACK_API_URL,
        timeout: float = 8,
    ) -> None:
        if not bot_token:
            raise ValueError("SLACK_BOT_TOKEN is required for ChatClient.")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {bot_token}"})

    def post_message(self, channel: str, text: str, blocks: list[dict[str, Any]] | None = None) -> str:
        payload: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            payload["blocks"] = blocks
        try:
            resp = self.session.post(f"{self.base_url}/chat.postMessage", json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise NotificationError(f"slack_exception:{type(exc).__name__}") from exc
        if resp.status_code >= 400:
            raise NotificationError(f"slack_http_{resp.status_code}")
        try:
            parsed = resp.json()
        except ValueError as exc:
            raise NotificationError("slack_invalid_json") from exc
        if not parsed.get("ok"):
            raise NotificationError(f"slack_error:{parsed.get('error', 'unknown')}")
        return str(parsed.get("ts", ""))
