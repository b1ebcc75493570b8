#!/usr/bin/env python3

import json
import unittest
from unittest.mock import MagicMock

import requests

from lifecycle.clients import ChatClient, ProviderClient
from lifecycle.errors import NotificationError, ProviderRequestError


class _FakeResponse:
    def __init__(self, status_code: int = 200, body=None, raw: str | None = None) -> None:
        self.status_code = status_code
        self.text = raw if raw is not None else json.dumps(body if body is not None else {})
        self.content = self.text.encode("utf-8")

    def json(self):
        return json.loads(self.text)


def _session(*, response=None, error=None) -> MagicMock:
    session = MagicMock()
    session.headers = {}
    if error is not None:
        session.request.side_effect = error
        session.post.side_effect = error
    else:
        session.request.return_value = response
        session.post.return_value = response
    return session


class ProviderClientTests(unittest.TestCase):
    def test_trigger_send_returns_campaign_id(self) -> None:
        session = _session(response=_FakeResponse(body={"campaign_id": "cmp-9"}))
        client = ProviderClient("https://provider.local/", "tok", session=session)

        self.assertEqual(client.trigger_send("draft-1"), "cmp-9")
        method, url = session.request.call_args.args
        self.assertEqual((method, url), ("POST", "https://provider.local/campaigns/drafts/draft-1/send"))
        self.assertEqual(session.headers["Authorization"], "Bearer tok")

    def test_connect_timeout_is_never_acknowledged(self) -> None:
        session = _session(error=requests.exceptions.ConnectTimeout("no route"))
        client = ProviderClient("https://provider.local", session=session)

        with self.assertRaises(ProviderRequestError) as caught:
            client.trigger_send("draft-1")
        self.assertFalse(caught.exception.acknowledged)
        self.assertTrue(caught.exception.retryable)

    def test_read_timeout_on_send_is_acknowledged(self) -> None:
        session = _session(error=requests.exceptions.ReadTimeout("slow"))
        client = ProviderClient("https://provider.local", session=session)

        with self.assertRaises(ProviderRequestError) as caught:
            client.trigger_send("draft-1")
        self.assertTrue(caught.exception.acknowledged)
        self.assertFalse(caught.exception.retryable)

    def test_read_timeout_on_lookup_is_retryable(self) -> None:
        session = _session(error=requests.exceptions.ReadTimeout("slow"))
        client = ProviderClient("https://provider.local", session=session)

        with self.assertRaises(ProviderRequestError) as caught:
            client.get_draft("draft-1")
        self.assertTrue(caught.exception.retryable)

    def test_server_error_on_send_is_acknowledged(self) -> None:
        session = _session(response=_FakeResponse(status_code=502, raw="bad gateway"))
        client = ProviderClient("https://provider.local", session=session)

        with self.assertRaises(ProviderRequestError) as caught:
            client.trigger_send("draft-1")
        self.assertTrue(caught.exception.acknowledged)
        self.assertEqual(caught.exception.status_code, 502)

    def test_client_error_is_not_retryable(self) -> None:
        session = _session(response=_FakeResponse(status_code=404, raw="not found"))
        client = ProviderClient("https://provider.local", session=session)

        with self.assertRaises(ProviderRequestError) as caught:
            client.get_delivery_metrics("cmp-9")
        self.assertFalse(caught.exception.acknowledged)
        self.assertFalse(caught.exception.retryable)

    def test_send_accepted_without_id_is_acknowledged(self) -> None:
        session = _session(response=_FakeResponse(body={"status": "queued"}))
        client = ProviderClient("https://provider.local", session=session)

        with self.assertRaises(ProviderRequestError) as caught:
            client.trigger_send("draft-1")
        self.assertTrue(caught.exception.acknowledged)

    def test_list_contacts_accepts_rows_or_ids(self) -> None:
        session = _session(response=_FakeResponse(body={"contacts": [{"contact_id": 7}, "c8"]}))
        client = ProviderClient("https://provider.local", session=session)

        self.assertEqual(client.list_contacts("list-1"), ["7", "c8"])

    def test_empty_membership_change_makes_no_call(self) -> None:
        session = _session(response=_FakeResponse())
        client = ProviderClient("https://provider.local", session=session)

        client.add_contacts("list-1", [])
        session.request.assert_not_called()

        client.remove_contacts("list-1", ["c1"])
        self.assertEqual(session.request.call_args.kwargs["json"], {"action": "remove", "contact_ids": ["c1"]})

    def test_requires_base_url(self) -> None:
        with self.assertRaises(ValueError):
            ProviderClient("")


class ChatClientTests(unittest.TestCase):
    def test_post_message_returns_ts(self) -> None:
        session = _session(response=_FakeResponse(body={"ok": True, "ts": "171.1"}))
        client = ChatClient("xoxb-test", session=session)

        ts = client.post_message("#campaigns", "hello", [{"type": "section"}])

        self.assertEqual(ts, "171.1")
        payload = session.post.call_args.kwargs["json"]
        self.assertEqual(payload["channel"], "#campaigns")
        self.assertEqual(payload["blocks"], [{"type": "section"}])

    def test_slack_error_body_raises(self) -> None:
        session = _session(response=_FakeResponse(body={"ok": False, "error": "channel_not_found"}))
        client = ChatClient("xoxb-test", session=session)

        with self.assertRaises(NotificationError) as caught:
            client.post_message("#missing", "hello")
        self.assertIn("channel_not_found", str(caught.exception))

    def test_transport_error_raises_notification_error(self) -> None:
        session = _session(error=requests.exceptions.ConnectionError("down"))
        client = ChatClient("xoxb-test", session=session)

        with self.assertRaises(NotificationError):
            client.post_message("#campaigns", "hello")


if __name__ == "__main__":
    unittest.main()
