import logging
from typing import List, Optional, Sequence, Tuple

import httpx
from pydantic import ValidationError

from app.metrics import record_llm_request
from app.schemas import LLMMessage, LLMReply, ReplyAction

logger = logging.getLogger(__name__)

DEEPSEEK_URL = "https://api.deepseek.com/chat/completions"
DEEPSEEK_MODEL = "deepseek-chat"

FALLBACK_REPLY = "Sorry, I ran into a technical issue. Our team will follow up with you shortly."


def fallback_reply() -> LLMReply:
    """Safe reply used whenever the model call fails outright."""
    return LLMReply(reply_to_user=FALLBACK_REPLY, action=ReplyAction.CONTINUE)


class LLMGateway:
    """
    Chat-completions client for DeepSeek.

    generate_reply never raises for backend problems: it returns the
    fallback reply together with a description of what went wrong.
    """

    def __init__(
        self,
        api_key: str,
        system_prompt: str,
        api_url: str = DEEPSEEK_URL,
        model: str = DEEPSEEK_MODEL,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.system_prompt = system_prompt
        self.api_url = api_url
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def build_messages(self, history: Sequence) -> List[dict]:
        messages = [LLMMessage(role="system", content=self.system_prompt)]
        for item in history:
            messages.append(LLMMessage(role=item.role, content=item.content))
        return [m.model_dump() for m in messages]

    def generate_reply(self, history: Sequence) -> Tuple[LLMReply, Optional[str]]:
        """
        Send the transcript to the model and parse its structured reply.

        Args:
            history: chronological items with `role` and `content`

        Returns:
            Tuple of (reply, error). error is None on success; otherwise
            reply is the fallback and error describes the failure.
        """
        payload = {
            "model": self.model,
            "messages": self.build_messages(history),
            "response_format": {"type": "json_object"},
        }
        logger.debug(f"LLM request: model={self.model}, messages_count={len(payload['messages'])}")

        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.post(
                    self.api_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            return self._fail(f"llm: http call failed: {e!r}")

        logger.debug(f"LLM response status: {response.status_code}")
        if response.status_code != 200:
            return self._fail(f"llm: unexpected status {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            return self._fail(f"llm: decode response: {e}")

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
            return self._fail("llm: empty choices")

        message = choices[0].get("message")
        content = (message.get("content") if isinstance(message, dict) else None) or ""
        try:
            reply = LLMReply.model_validate_json(content)
        except ValidationError as e:
            return self._fail(f"llm: parse JSON content: {e.errors()[0].get('msg', e)}")

        record_llm_request("ok")
        logger.info(f"LLM reply parsed: action={reply.action.value}, fields={sorted(reply.extracted_data)}")
        return reply, None

    def _fail(self, error: str) -> Tuple[LLMReply, str]:
        logger.error(error)
        record_llm_request("fallback")
        return fallback_reply(), error
