from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

import httpx

from shared.contracts.enums import NotificationKind
from shared.contracts.errors import NotificationDispatchFailure
from shared.contracts.models import as_utc

logger = logging.getLogger(__name__)

NOTIFICATION_TAGS = {
    NotificationKind.REMINDER: "medication-reminder",
    NotificationKind.OVERDUE: "medication-overdue",
}


@dataclass
class PushMessage:
    user_id: int
    title: str
    body: str
    data: Dict[str, object] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, object]:
        return {
            "user_id": self.user_id,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "require_interaction": True,
        }


def build_push_message(
    kind: NotificationKind,
    user_id: int,
    pet_name: str,
    medication_name: str,
    scheduled_time: datetime,
) -> PushMessage:
    scheduled_time = as_utc(scheduled_time)
    if kind == NotificationKind.REMINDER:
        title = f"Time for {pet_name}'s medication"
        body = f"{medication_name} is due soon"
    else:
        title = f"{pet_name}'s medication is overdue"
        body = f"{medication_name} was due at {scheduled_time:%H:%M} UTC"
    return PushMessage(
        user_id=user_id,
        title=title,
        body=body,
        data={
            "type": NOTIFICATION_TAGS[kind],
            "pet_name": pet_name,
            "medication_name": medication_name,
            "scheduled_time": scheduled_time.isoformat(),
        },
    )


class PushGatewayNotifier:
    """Hands reminder and overdue pushes to the push gateway over HTTP."""

    def __init__(self, gateway_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self.gateway_url = gateway_url
        self.client = client or httpx.Client(timeout=timeout)

    def send_reminder(self, user_id: int, pet_name: str, medication_name: str, scheduled_time: datetime) -> None:
        self._deliver(build_push_message(NotificationKind.REMINDER, user_id, pet_name, medication_name, scheduled_time))

    def send_overdue(self, user_id: int, pet_name: str, medication_name: str, scheduled_time: datetime) -> None:
        self._deliver(build_push_message(NotificationKind.OVERDUE, user_id, pet_name, medication_name, scheduled_time))

    def close(self) -> None:
        self.client.close()

    def _deliver(self, message: PushMessage) -> None:
        try:
            response = self.client.post(self.gateway_url, json=message.to_payload())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationDispatchFailure(
                f"Push gateway unreachable: {exc}", user_id=message.user_id
            ) from exc
        logger.info(f"Push {message.data['type']} queued for user {message.user_id}")
