import unittest

import httpx

from services.notification_gateway.dispatcher import HttpNotificationDispatcher, RecordingDispatcher
from services.notification_gateway.outbound import AuditTrail, EmailSendAPI, NotificationGateway, PushSendAPI
from shared.contracts.enums import ChannelType
from shared.contracts.models import NotificationMessage


def _message(channel: ChannelType, recipient: str) -> NotificationMessage:
    return NotificationMessage(
        recipient=recipient,
        channel=channel,
        subject="2 doses due soon",
        body="Your next dose of Metformin is due at 8:00 AM.",
        metadata={"dose_ids": ["d1", "d2"], "url": "/dashboard", "events": []},
    )


class NotificationGatewayTests(unittest.TestCase):
    def setUp(self) -> None:
        self.audit = AuditTrail()
        self.gateway = NotificationGateway(EmailSendAPI(), PushSendAPI(), self.audit)

    def test_email_delivery_is_audited(self) -> None:
        receipt = self.gateway.deliver(_message(ChannelType.EMAIL, "ana@example.com"))

        self.assertEqual("sent", receipt.status)
        self.assertEqual("email", receipt.detail)
        self.assertEqual("reminder_delivery", self.audit.records[0]["type"])
        self.assertEqual("sent", self.audit.records[0]["status"])

    def test_invalid_email_recipient_fails_without_raising(self) -> None:
        receipt = self.gateway.deliver(_message(ChannelType.EMAIL, "not-an-address"))

        self.assertEqual("failed", receipt.status)
        self.assertEqual("failed", self.audit.records[0]["status"])

    def test_push_forwards_only_routing_metadata(self) -> None:
        receipt = self.gateway.deliver(_message(ChannelType.PUSH, "https://push.example/abc"))

        self.assertEqual("push", receipt.detail)
        self.assertEqual("push", self.audit.records[0]["channel"])


class DispatcherTests(unittest.TestCase):
    def test_recording_dispatcher_keeps_messages(self) -> None:
        dispatcher = RecordingDispatcher()
        dispatcher.send(_message(ChannelType.EMAIL, "ana@example.com"))
        self.assertEqual(1, len(dispatcher.sent))

    def test_http_dispatcher_posts_to_send_endpoint(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"status": "sent", "channel": "push", "detail": "push"})

        dispatcher = HttpNotificationDispatcher(
            "http://gateway.local/",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        receipt = dispatcher.send(_message(ChannelType.PUSH, "https://push.example/abc"))

        self.assertEqual(["/send"], seen)
        self.assertEqual("sent", receipt.status)

    def test_http_dispatcher_raises_on_gateway_errors(self) -> None:
        dispatcher = HttpNotificationDispatcher(
            "http://gateway.local",
            client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(502))),
        )
        with self.assertRaises(httpx.HTTPStatusError):
            dispatcher.send(_message(ChannelType.EMAIL, "ana@example.com"))


if __name__ == "__main__":
    unittest.main()
