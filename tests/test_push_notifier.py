from datetime import datetime, timezone
import json

import httpx
import pytest

from services.notifier.outbound import PushGatewayNotifier, build_push_message
from shared.contracts.enums import NotificationKind
from shared.contracts.errors import NotificationDispatchFailure

GATEWAY_URL = "http://push-gateway.test/send"
DUE_AT = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def _notifier(handler) -> PushGatewayNotifier:
    return PushGatewayNotifier(GATEWAY_URL, client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_reminder_message_wording():
    message = build_push_message(NotificationKind.REMINDER, 10, "Biscuit", "Apoquel", DUE_AT)
    assert message.title == "Time for Biscuit's medication"
    assert message.body == "Apoquel is due soon"
    assert message.data["type"] == "medication-reminder"


def test_overdue_message_names_the_missed_time():
    message = build_push_message(NotificationKind.OVERDUE, 10, "Biscuit", "Apoquel", datetime(2024, 1, 1, 8, 0))
    assert message.title == "Biscuit's medication is overdue"
    assert message.body == "Apoquel was due at 08:00 UTC"
    assert message.data["scheduled_time"] == "2024-01-01T08:00:00+00:00"


def test_send_reminder_posts_payload_to_gateway():
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, json={"queued": True})

    _notifier(handler).send_reminder(10, "Biscuit", "Apoquel", DUE_AT)

    assert len(captured) == 1
    assert str(captured[0].url) == GATEWAY_URL
    payload = json.loads(captured[0].content)
    assert payload["user_id"] == 10
    assert payload["title"] == "Time for Biscuit's medication"
    assert payload["data"]["medication_name"] == "Apoquel"


def test_gateway_error_status_becomes_dispatch_failure():
    notifier = _notifier(lambda request: httpx.Response(503))

    with pytest.raises(NotificationDispatchFailure) as excinfo:
        notifier.send_overdue(11, "Biscuit", "Apoquel", DUE_AT)
    assert excinfo.value.user_id == 11


def test_transport_error_becomes_dispatch_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NotificationDispatchFailure):
        _notifier(handler).send_reminder(10, "Biscuit", "Apoquel", DUE_AT)
