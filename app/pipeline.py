"""
Inbound message pipeline.

The webhook route acknowledges Meta as soon as the signature checks out and
hands the raw body to InboundPipeline.submit(). Each callback is processed
on a bounded worker pool:

    parse -> per message: type gate -> conversation lock -> dedupe ->
    state gate -> persist user turn -> model -> persist reply/data -> dispatch

Messages from one phone number are processed strictly one at a time;
different phone numbers run concurrently. Text messages are queued per
phone number and a single task drains each queue, so a pool worker never
sits waiting for another message from the same phone to finish.
"""

import contextvars
import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout, wait
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.escalation import EscalationError, EscalationNotifier
from app.llm import LLMGateway, fallback_reply
from app.locks import ConversationLockTable
from app.metrics import record_pipeline_outcome
from app.models import ROLE_ASSISTANT, ROLE_USER, STATUS_PAUSED
from app.schemas import LLMMessage, LLMReply, ReplyAction, WAMessage, WAPayload
from app.storage import (
    create_message,
    get_conversation_status,
    get_recent_messages,
    message_exists,
    upsert_conversation,
    upsert_extracted_data,
)
from app.whatsapp import WhatsAppSender

logger = logging.getLogger(__name__)

UNSUPPORTED_TYPE_REPLY = "Sorry, I can only handle text messages right now."
PAUSED_REPLY = "Our team is handling your request directly. We'll be in touch shortly!"
SCHEDULE_TEMPLATE = "{reply}\n\nYou can pick a time for an on-site assessment here: {link}"
DEFAULT_SCHEDULING_LINK = "https://bookings.clearoutspaces.ca/clearoutspaces/assessment"

# Pipeline outcomes, also used as metric labels
OUTCOME_REPLIED = "replied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_PAUSED = "paused"
OUTCOME_UNSUPPORTED = "unsupported_type"
OUTCOME_ERROR = "error"
OUTCOME_MALFORMED = "malformed"


class InboundPipeline:
    """
    Processes verified WhatsApp callbacks off the request path.

    All collaborators are injected so tests can run the pipeline against
    fakes and a throwaway database.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: LLMGateway,
        sender: WhatsAppSender,
        notifier: EscalationNotifier,
        locks: Optional[ConversationLockTable] = None,
        max_workers: int = 8,
        history_limit: int = 20,
        llm_timeout_seconds: float = 35.0,
        scheduling_link: str = DEFAULT_SCHEDULING_LINK,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.sender = sender
        self.notifier = notifier
        self.locks = locks if locks is not None else ConversationLockTable()
        self.history_limit = history_limit
        self.llm_timeout_seconds = llm_timeout_seconds
        self.scheduling_link = scheduling_link

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline")
        # Separate pool so a model call can be abandoned at the outer deadline
        self._llm_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="llm")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        # A phone number present here has a drain task running for it
        self._queues: Dict[str, Deque[WAMessage]] = {}
        self._queues_guard = threading.Lock()

    # =========================================================================
    # Task management
    # =========================================================================

    def submit(self, raw_body: bytes) -> Future:
        """Queue a verified callback body for processing and return immediately."""
        return self._spawn(self._run, raw_body)

    def _spawn(self, fn: Callable, *args) -> Future:
        # Run in a copy of the caller's context so logs keep the request id
        ctx = contextvars.copy_context()
        future = self._executor.submit(ctx.run, fn, *args)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every submitted callback, and the work it queued, to finish.
        False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._pending_lock:
                pending = [f for f in self._pending if not f.done()]
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait(pending, timeout=remaining)
            if not_done:
                return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self._llm_executor.shutdown(wait=wait)

    def _run(self, raw_body: bytes) -> None:
        try:
            for message in self.parse(raw_body):
                if message.is_text:
                    self._enqueue(message)
                else:
                    self._handle_safely(message)
        except Exception:
            logger.exception("Pipeline task failed")

    def _enqueue(self, message: WAMessage) -> None:
        phone = message.from_number
        with self._queues_guard:
            queue = self._queues.get(phone)
            if queue is not None:
                queue.append(message)
                return
            self._queues[phone] = deque([message])
        self._spawn(self._drain_conversation, phone)

    def _drain_conversation(self, phone: str) -> None:
        while True:
            with self._queues_guard:
                queue = self._queues[phone]
                if not queue:
                    del self._queues[phone]
                    return
                message = queue.popleft()
            self._handle_safely(message)

    # =========================================================================
    # Processing
    # =========================================================================

    def parse(self, raw_body: bytes) -> List[WAMessage]:
        """
        Extract the messages of a callback body.

        Delivery receipts and unparsable bodies yield an empty list; a
        malformed entry is skipped without dropping its siblings.
        """
        try:
            payload = WAPayload.model_validate_json(raw_body)
        except ValidationError as e:
            logger.error(f"Dropping unparsable webhook payload: {e.error_count()} errors")
            return []

        messages = []
        for raw in payload.iter_raw_messages():
            try:
                messages.append(WAMessage.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed message entry: {e.error_count()} errors")
                record_pipeline_outcome(OUTCOME_MALFORMED)

        if not messages:
            logger.debug("Callback carries no messages (status update)")
        return messages

    def process(self, raw_body: bytes) -> List[str]:
        """
        Handle every message in a callback body on the calling thread.

        Returns the outcome of each message.
        """
        return [self._handle_safely(message) for message in self.parse(raw_body)]

    def _handle_safely(self, message: WAMessage) -> str:
        try:
            return self.handle_message(message)
        except Exception:
            logger.exception(f"Failed to handle message {message.id}")
            record_pipeline_outcome(OUTCOME_ERROR)
            return OUTCOME_ERROR

    def handle_message(self, message: WAMessage) -> str:
        phone = message.from_number

        if not message.is_text:
            logger.info(f"Ignoring non-text message type={message.type} from={phone}")
            self.sender.send_text(phone, UNSUPPORTED_TYPE_REPLY)
            record_pipeline_outcome(OUTCOME_UNSUPPORTED)
            return OUTCOME_UNSUPPORTED

        with self.locks.hold(phone):
            outcome = self._handle_locked(phone, message.id, message.text.body)

        logger.info(f"Message {message.id} from {phone}: {outcome}")
        record_pipeline_outcome(outcome)
        return outcome

    def _handle_locked(self, phone: str, message_id: str, body: str) -> str:
        try:
            gate, transcript = self._record_inbound(phone, message_id, body)
        except SQLAlchemyError as e:
            logger.error(f"Datastore error while recording {message_id}: {e}")
            return OUTCOME_ERROR

        if gate is not None:
            if gate == OUTCOME_PAUSED:
                self.sender.send_text(phone, PAUSED_REPLY)
            return gate

        reply, error = self._invoke_model(transcript)
        if error:
            logger.error(f"Model call for {phone} fell back: {error}")

        self._record_reply(phone, reply, succeeded=error is None)
        self.dispatch(phone, reply)
        return OUTCOME_REPLIED

    def _record_inbound(self, phone: str, message_id: str, body: str) -> Tuple[Optional[str], List[LLMMessage]]:
        """
        Dedupe, check state and store the user turn.

        Returns (gate, transcript): gate is an outcome when processing
        stops here, otherwise None and the transcript to send to the model.
        """
        with self.session_factory() as db:
            if message_exists(db, message_id):
                return OUTCOME_DUPLICATE, []

            upsert_conversation(db, phone)

            if get_conversation_status(db, phone) == STATUS_PAUSED:
                # Kept for the audit trail; the bot stays silent
                ok, _ = create_message(db, message_id, phone, ROLE_USER, body)
                if not ok:
                    logger.error(f"Could not store message {message_id} for paused conversation {phone}")
                return OUTCOME_PAUSED, []

            ok, duplicate = create_message(db, message_id, phone, ROLE_USER, body)
            if not ok:
                return OUTCOME_ERROR, []
            if duplicate:
                return OUTCOME_DUPLICATE, []

            history = get_recent_messages(db, phone, self.history_limit)
            transcript = [LLMMessage(role=m.role, content=m.content) for m in history]
        return None, transcript

    def _invoke_model(self, transcript: List[LLMMessage]) -> Tuple[LLMReply, Optional[str]]:
        future = self._llm_executor.submit(self.gateway.generate_reply, transcript)
        try:
            return future.result(timeout=self.llm_timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            return fallback_reply(), f"llm: no reply within {self.llm_timeout_seconds}s"
        except Exception as e:
            return fallback_reply(), f"llm: gateway raised {e!r}"

    def _record_reply(self, phone: str, reply: LLMReply, succeeded: bool) -> None:
        # The reply is sent even if it cannot be stored
        try:
            with self.session_factory() as db:
                assistant_id = f"assistant-{uuid.uuid4().hex}"
                ok, _ = create_message(db, assistant_id, phone, ROLE_ASSISTANT, reply.reply_to_user)
                if not ok:
                    logger.error(f"Could not store assistant reply for {phone}")
                if succeeded:
                    upsert_extracted_data(db, phone, reply.extracted_data)
        except SQLAlchemyError as e:
            logger.error(f"Datastore error while recording reply for {phone}: {e}")

    def dispatch(self, phone: str, reply: LLMReply) -> None:
        """Act on the model's action tag and send the reply."""
        if reply.action is ReplyAction.HANDOFF:
            try:
                self.notifier.notify_handoff(phone, reply.extracted_data)
            except EscalationError as e:
                logger.error(f"Slack handoff for {phone} failed, replying anyway: {e}")
            self.sender.send_text(phone, reply.reply_to_user)

        elif reply.action is ReplyAction.SCHEDULE:
            text = SCHEDULE_TEMPLATE.format(reply=reply.reply_to_user, link=self.scheduling_link)
            self.sender.send_text(phone, text)

        else:
            self.sender.send_text(phone, reply.reply_to_user)
