"""
Tests for the LLM gateway and reply contract.

Outbound HTTP is served by httpx.MockTransport.
"""

import json

import httpx
import pytest

from app.llm import FALLBACK_REPLY, LLMGateway, fallback_reply
from app.schemas import HOLDING_REPLY, LLMMessage, LLMReply, ReplyAction


HISTORY = [
    LLMMessage(role="user", content="Hi, I need a couch removed"),
    LLMMessage(role="assistant", content="Sure! Where is it?"),
    LLMMessage(role="user", content="12 Main St"),
]


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def make_gateway(handler) -> LLMGateway:
    return LLMGateway(
        api_key="test-deepseek-key",
        system_prompt="SYSTEM PROMPT",
        api_url="https://llm.test/chat/completions",
        timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
    )


class TestReplyContract:

    def test_action_coercion(self):
        assert ReplyAction.coerce("handoff") is ReplyAction.HANDOFF
        assert ReplyAction.coerce("escalate") is ReplyAction.CONTINUE
        assert ReplyAction.coerce(None) is ReplyAction.CONTINUE

    def test_empty_reply_replaced(self):
        assert LLMReply(reply_to_user="   ").reply_to_user == HOLDING_REPLY
        assert LLMReply.model_validate({"reply_to_user": None}).reply_to_user == HOLDING_REPLY

    def test_extracted_values_become_strings(self):
        reply = LLMReply.model_validate({
            "reply_to_user": "ok",
            "extracted_data": {"stairs": 2, "address": None},
        })
        assert reply.extracted_data == {"stairs": "2", "address": "unknown"}

    def test_fallback(self):
        reply = fallback_reply()
        assert reply.reply_to_user == FALLBACK_REPLY
        assert reply.action is ReplyAction.CONTINUE


class TestGenerateReply:

    def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion(json.dumps({
                "reply_to_user": "How many flights of stairs?",
                "extracted_data": {"address": "12 Main St", "stairs": "unknown"},
                "action": "continue",
            })))

        reply, error = make_gateway(handler).generate_reply(HISTORY)

        assert error is None
        assert reply.reply_to_user == "How many flights of stairs?"
        assert reply.extracted_data["address"] == "12 Main St"
        assert reply.action is ReplyAction.CONTINUE

        assert seen["auth"] == "Bearer test-deepseek-key"
        body = seen["body"]
        assert body["model"] == "deepseek-chat"
        assert body["response_format"] == {"type": "json_object"}
        assert body["messages"][0] == {"role": "system", "content": "SYSTEM PROMPT"}
        assert [m["content"] for m in body["messages"][1:]] == [m.content for m in HISTORY]

    def test_handoff_action(self):
        def handler(request):
            return httpx.Response(200, json=completion(json.dumps({
                "reply_to_user": "Passing you to the team.",
                "extracted_data": {},
                "action": "handoff",
            })))

        reply, error = make_gateway(handler).generate_reply(HISTORY)
        assert error is None
        assert reply.action is ReplyAction.HANDOFF

    def test_empty_reply_and_unknown_action_normalized(self):
        def handler(request):
            return httpx.Response(200, json=completion(json.dumps({
                "reply_to_user": "",
                "action": "dance",
            })))

        reply, error = make_gateway(handler).generate_reply(HISTORY)
        assert error is None
        assert reply.reply_to_user == HOLDING_REPLY
        assert reply.action is ReplyAction.CONTINUE

    @pytest.mark.parametrize("status_code", [400, 401, 429, 500, 503])
    def test_non_200_falls_back(self, status_code):
        reply, error = make_gateway(lambda r: httpx.Response(status_code, text="nope")).generate_reply(HISTORY)
        assert reply == fallback_reply()
        assert str(status_code) in error

    def test_timeout_falls_back(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        reply, error = make_gateway(handler).generate_reply(HISTORY)
        assert reply == fallback_reply()
        assert "http call failed" in error

    def test_connection_error_falls_back(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        reply, error = make_gateway(handler).generate_reply(HISTORY)
        assert reply.reply_to_user == FALLBACK_REPLY
        assert error

    def test_non_json_body_falls_back(self):
        reply, error = make_gateway(lambda r: httpx.Response(200, text="<html>")).generate_reply(HISTORY)
        assert reply == fallback_reply()
        assert "decode" in error

    def test_empty_choices_falls_back(self):
        reply, error = make_gateway(lambda r: httpx.Response(200, json={"choices": []})).generate_reply(HISTORY)
        assert reply == fallback_reply()
        assert error == "llm: empty choices"

    @pytest.mark.parametrize("content", ["not json", "", "[1, 2]", '{"extracted_data": "oops"}'])
    def test_malformed_content_falls_back(self, content):
        reply, error = make_gateway(lambda r: httpx.Response(200, json=completion(content))).generate_reply(HISTORY)
        assert reply == fallback_reply()
        assert error.startswith("llm: parse JSON content")
