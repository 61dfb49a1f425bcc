"""
Slack escalation: tell the team when a conversation needs a human, and
handle the "Take Over Chat" button that pauses the bot for that customer.
"""

import logging
from typing import Dict, Optional

import httpx
from sqlalchemy.orm import Session

from app.metrics import record_escalation_event
from app.models import STATUS_PAUSED
from app.schemas import SlackCallbackResponse, SlackInteractivePayload
from app.storage import get_conversation_status, pause_conversation

logger = logging.getLogger(__name__)

TAKE_OVER_ACTION = "take_over_chat"

NOT_FOUND_TEXT = "⚠️ Conversation not found."
ALREADY_PAUSED_TEXT = "ℹ️ Chat was already paused."
PAUSED_TEXT = "✅ Chat paused. {operator} has taken over the conversation."


class EscalationError(Exception):
    """Raised when the Slack notification could not be delivered."""


def field_label(name: str) -> str:
    return name.replace("_", " ").strip().capitalize()


def build_handoff_payload(conversation_id: str, extracted_data: Dict[str, str]) -> dict:
    """Slack message with the quote details and a Take Over Chat button."""
    lines = ["*New Quote Request*", f"*Phone:* {conversation_id}"]
    for name, value in extracted_data.items():
        lines.append(f"*{field_label(name)}:* {value}")

    return {
        "text": f"New Quote Request from +{conversation_id}",
        "blocks": [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "\n".join(lines)},
            },
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "action_id": TAKE_OVER_ACTION,
                        "value": conversation_id,
                        "text": {"type": "plain_text", "text": "Take Over Chat"},
                    }
                ],
            },
        ],
    }


class EscalationNotifier:
    """Posts handoff notifications to a Slack incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def notify_handoff(self, conversation_id: str, extracted_data: Dict[str, str]) -> None:
        """
        Raises:
            EscalationError: transport failure or non-200 response
        """
        payload = build_handoff_payload(conversation_id, extracted_data)
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            record_escalation_event("notify_failed")
            raise EscalationError(f"slack: post error: {e!r}") from e

        if response.status_code != 200:
            record_escalation_event("notify_failed")
            raise EscalationError(f"slack: unexpected status {response.status_code}: {response.text}")

        record_escalation_event("notified")
        logger.info(f"Escalation sent to Slack for {conversation_id}")


# =============================================================================
# Interactive callback
# =============================================================================

def take_over_conversation(db: Session, conversation_id: str, operator: str) -> SlackCallbackResponse:
    """
    Pause a conversation on behalf of an operator.

    Unknown and already-paused conversations are reported without mutation.
    Datastore errors propagate to the caller.
    """
    status = get_conversation_status(db, conversation_id)
    if status is None:
        logger.warning(f"Take over requested for unknown conversation {conversation_id}")
        record_escalation_event("not_found")
        return SlackCallbackResponse(text=NOT_FOUND_TEXT)

    if status == STATUS_PAUSED:
        record_escalation_event("already_paused")
        return SlackCallbackResponse(text=ALREADY_PAUSED_TEXT)

    if not pause_conversation(db, conversation_id):
        # Row vanished between the read and the update
        record_escalation_event("not_found")
        return SlackCallbackResponse(text=NOT_FOUND_TEXT)

    logger.info(f"Conversation {conversation_id} paused by {operator}")
    record_escalation_event("paused")
    return SlackCallbackResponse(text=PAUSED_TEXT.format(operator=operator))


def process_interaction(db: Session, payload: SlackInteractivePayload) -> Optional[SlackCallbackResponse]:
    """
    Dispatch the first action of an interactive payload.

    Returns None for actions this service does not handle.
    """
    action = payload.actions[0]
    if action.action_id != TAKE_OVER_ACTION:
        logger.info(f"Ignoring Slack action {action.action_id!r}")
        record_escalation_event("ignored")
        return None
    return take_over_conversation(db, action.value, payload.user.display_name)
