from __future__ import annotations

import logging
from typing import Any, Iterable

import requests

from tripboard.models import NotificationConfig
from tripboard.state_store import StateStore
from tripboard.timeutils import utc_now


logger = logging.getLogger(__name__)

EVENT_PROPOSAL_CANCELED = "proposal_canceled"
EVENT_PROPOSAL_CONVERTED = "proposal_converted"
EVENT_ENTRY_CANCELED = "entry_canceled"
EVENT_WAITLIST_PROMOTED = "waitlist_promoted"


class WebhookNotifier:
    def __init__(self, config: NotificationConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.webhook_url)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def send(self, event: str, recipients: list[str], payload: dict[str, Any]) -> bool:
        if not self.is_configured():
            return False
        response = requests.post(
            self.config.webhook_url,
            headers=self._headers(),
            json={
                "event": event,
                "recipients": recipients,
                "payload": payload,
                "sent_at": utc_now().isoformat(),
            },
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        return True


def dispatch_notification(
    notifier: WebhookNotifier | None,
    store: StateStore,
    *,
    event: str,
    entity_id: str,
    actor_id: str,
    recipients: Iterable[str],
    payload: dict[str, Any],
) -> bool:
    """Fire-and-forget delivery. The state change that triggered it is already committed."""
    targets = sorted({str(r) for r in recipients if r and str(r) != str(actor_id)})
    if notifier is None or not targets:
        return False
    try:
        delivered = notifier.send(event, targets, payload)
    except Exception as exc:
        logger.warning("notification %s for %s failed: %s", event, entity_id, exc)
        store.record_audit_event(
            entity_id=entity_id,
            actor_id=actor_id,
            action="notification_failed",
            details={"event": event, "recipients": targets, "error": f"{type(exc).__name__}: {exc}"},
        )
        return False
    if delivered:
        store.record_audit_event(
            entity_id=entity_id,
            actor_id=actor_id,
            action="notification_sent",
            details={"event": event, "recipients": targets},
        )
    return delivered
