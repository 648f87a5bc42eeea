import copy
import json
import unittest

from hypothesis import given, settings
from hypothesis import strategies as st

from app.core.exceptions import InvalidRequestError
from app.schemas.dialects import Dialect, ExternalRequest
from app.utils.antigravity_converters import (
    build_upstream_envelope,
    extract_usage,
    list_models,
    preprocess_anthropic_request,
    resolve_thinking_budget,
    upstream_event_to_gemini_chunks,
    upstream_event_to_openai_chunks,
    upstream_response_to_gemini,
    upstream_response_to_openai,
)


def _wrap(parts, finish=None, usage=None):
    candidate = {"content": {"role": "model", "parts": parts}}
    if finish:
        candidate["finishReason"] = finish
    response = {"candidates": [candidate]}
    if usage:
        response["usageMetadata"] = usage
    return {"response": response}


def _envelope(dialect, payload, *, model="gemini-2.5-pro", thinking_budget=None):
    request = ExternalRequest(
        dialect=dialect,
        model=model,
        payload=payload,
        thinking_budget=thinking_budget,
    )
    return build_upstream_envelope(request, project_id="proj-1", session_id="sess-1")


# ---------------------------------------------------------------------------
# Anthropic 预处理
# ---------------------------------------------------------------------------

_text_block = st.fixed_dictionaries({"type": st.just("text"), "text": st.text(max_size=5)})
_other_block = st.fixed_dictionaries(
    {
        "type": st.just("tool_result"),
        "tool_use_id": st.text(min_size=1, max_size=5),
        "content": st.text(max_size=5),
    }
)
_content = st.one_of(
    st.text(max_size=5),
    st.lists(st.one_of(_text_block, _other_block), max_size=4),
)
_anthropic_payload = st.fixed_dictionaries(
    {
        "model": st.just("claude-sonnet-4-5"),
        "max_tokens": st.integers(min_value=1, max_value=4096),
        "messages": st.lists(
            st.fixed_dictionaries(
                {"role": st.sampled_from(["user", "assistant"]), "content": _content}
            ),
            min_size=1,
            max_size=4,
        ),
    }
)


class TestPreprocessAnthropicRequest(unittest.TestCase):
    @given(payload=_anthropic_payload)
    @settings(max_examples=100)
    def test_preprocess_is_idempotent(self, payload) -> None:
        once = preprocess_anthropic_request(payload)
        self.assertEqual(preprocess_anthropic_request(once), once)

    @given(payload=_anthropic_payload)
    @settings(max_examples=100)
    def test_preprocess_does_not_mutate_input(self, payload) -> None:
        before = copy.deepcopy(payload)
        preprocess_anthropic_request(payload)
        self.assertEqual(payload, before)

    @given(payload=_anthropic_payload)
    @settings(max_examples=100)
    def test_preprocess_leaves_no_empty_text(self, payload) -> None:
        out = preprocess_anthropic_request(payload)
        for message in out["messages"]:
            content = message["content"]
            if isinstance(content, str):
                self.assertNotEqual(content, "")
                continue
            self.assertTrue(content)
            for block in content:
                if block["type"] == "text":
                    self.assertNotEqual(block["text"], "")

    def test_single_empty_text_block_becomes_one_space_block(self) -> None:
        payload = {"messages": [{"role": "user", "content": [{"type": "text", "text": ""}]}]}
        out = preprocess_anthropic_request(payload)
        self.assertEqual(out["messages"][0]["content"], [{"type": "text", "text": " "}])

    def test_empty_block_list_and_empty_string(self) -> None:
        payload = {
            "messages": [
                {"role": "user", "content": []},
                {"role": "assistant", "content": ""},
            ]
        }
        out = preprocess_anthropic_request(payload)
        self.assertEqual(out["messages"][0]["content"], [{"type": "text", "text": " "}])
        self.assertEqual(out["messages"][1]["content"], " ")


# ---------------------------------------------------------------------------
# 请求 -> envelope
# ---------------------------------------------------------------------------


class TestBuildUpstreamEnvelope(unittest.TestCase):
    def test_openai_leading_system_becomes_system_instruction(self) -> None:
        envelope = _envelope(
            Dialect.OPENAI,
            {
                "model": "gemini-2.5-pro",
                "messages": [
                    {"role": "system", "content": "be terse"},
                    {"role": "user", "content": "hi"},
                ],
            },
        )
        request = envelope["request"]
        self.assertEqual(request["systemInstruction"]["role"], "user")
        self.assertEqual(request["systemInstruction"]["parts"][0]["text"], "be terse")
        self.assertEqual(request["contents"], [{"role": "user", "parts": [{"text": "hi"}]}])

    def test_envelope_shape(self) -> None:
        envelope = _envelope(
            Dialect.OPENAI,
            {"model": "gemini-2.5-pro", "messages": [{"role": "user", "content": "hi"}], "temperature": 0.3},
        )
        self.assertEqual(envelope["project"], "proj-1")
        self.assertEqual(envelope["model"], "gemini-2.5-pro")
        self.assertTrue(envelope["requestId"].startswith("agent-"))
        self.assertEqual(envelope["request"]["sessionId"], "sess-1")
        self.assertEqual(envelope["request"]["generationConfig"], {"temperature": 0.3})
        self.assertTrue(envelope["request"]["safetySettings"])

    def test_request_ids_are_fresh(self) -> None:
        payload = {"model": "m", "messages": [{"role": "user", "content": "hi"}]}
        first = _envelope(Dialect.OPENAI, payload)
        second = _envelope(Dialect.OPENAI, payload)
        self.assertNotEqual(first["requestId"], second["requestId"])

    def test_assistant_role_maps_to_model_and_tool_calls(self) -> None:
        envelope = _envelope(
            Dialect.OPENAI,
            {
                "model": "m",
                "messages": [
                    {"role": "user", "content": "weather?"},
                    {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "get_weather", "arguments": "{\"city\": \"Paris\"}"},
                            }
                        ],
                    },
                    {"role": "tool", "tool_call_id": "call_1", "content": "{\"temp\": 20}"},
                ],
            },
        )
        contents = envelope["request"]["contents"]
        self.assertEqual([c["role"] for c in contents], ["user", "model", "user"])
        self.assertEqual(contents[1]["parts"][0]["functionCall"], {"name": "get_weather", "args": {"city": "Paris"}})
        self.assertEqual(
            contents[2]["parts"][0]["functionResponse"],
            {"name": "get_weather", "response": {"result": {"temp": 20}}},
        )

    def test_openai_without_content_is_rejected(self) -> None:
        with self.assertRaises(InvalidRequestError):
            _envelope(Dialect.OPENAI, {"model": "m", "messages": [{"role": "user", "content": ""}]})

    def test_reasoning_effort_sets_thinking_config(self) -> None:
        payload = {"model": "m", "messages": [{"role": "user", "content": "hi"}], "reasoning_effort": "high"}
        budget = resolve_thinking_budget(Dialect.OPENAI, payload)
        self.assertEqual(budget, 24576)
        envelope = _envelope(Dialect.OPENAI, payload, thinking_budget=budget)
        self.assertEqual(
            envelope["request"]["generationConfig"]["thinkingConfig"],
            {"includeThoughts": True, "thinkingBudget": 24576},
        )

    def test_thinking_model_suffix_uses_default_budget(self) -> None:
        payload = {"model": "gemini-2.5-flash-thinking", "messages": [{"role": "user", "content": "hi"}]}
        self.assertEqual(resolve_thinking_budget(Dialect.OPENAI, payload), 8192)
        self.assertIsNone(resolve_thinking_budget(Dialect.OPENAI, {"model": "gemini-2.5-pro"}))

    def test_anthropic_request(self) -> None:
        payload = {
            "model": "claude-sonnet-4-5",
            "max_tokens": 256,
            "system": [{"type": "text", "text": "sys"}],
            "thinking": {"type": "enabled", "budget_tokens": 2048},
            "messages": [
                {"role": "user", "content": "hello"},
                {
                    "role": "assistant",
                    "content": [
                        {"type": "thinking", "thinking": "hmm", "signature": "sig"},
                        {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"q": 1}},
                    ],
                },
                {
                    "role": "user",
                    "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "found"}],
                },
            ],
        }
        budget = resolve_thinking_budget(Dialect.ANTHROPIC, payload)
        self.assertEqual(budget, 2048)
        request = _envelope(Dialect.ANTHROPIC, payload, model="claude-sonnet-4-5", thinking_budget=budget)["request"]

        self.assertEqual(request["systemInstruction"], {"role": "user", "parts": [{"text": "sys"}]})
        self.assertEqual(request["generationConfig"]["maxOutputTokens"], 256)
        model_parts = request["contents"][1]["parts"]
        self.assertEqual(model_parts[0], {"text": "hmm", "thought": True, "thoughtSignature": "sig"})
        self.assertEqual(model_parts[1]["functionCall"]["name"], "lookup")
        tool_result = request["contents"][2]["parts"][0]["functionResponse"]
        self.assertEqual(tool_result["name"], "lookup")
        self.assertEqual(tool_result["response"], {"result": "found"})

    def test_gemini_payload_passthrough(self) -> None:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": "hi"}]}],
            "systemInstruction": {"role": "system", "parts": [{"text": "sys"}]},
            "generationConfig": {"temperature": 0.1},
            "safetySettings": [{"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"}],
        }
        request = _envelope(Dialect.GEMINI, payload)["request"]
        self.assertEqual(request["contents"], payload["contents"])
        self.assertEqual(request["systemInstruction"]["role"], "user")
        self.assertEqual(request["generationConfig"], {"temperature": 0.1})
        self.assertEqual(request["safetySettings"], payload["safetySettings"])


# ---------------------------------------------------------------------------
# 上游 -> OpenAI
# ---------------------------------------------------------------------------


class TestUpstreamToOpenAI(unittest.TestCase):
    def test_non_stream_text_response(self) -> None:
        raw = _wrap(
            [{"text": "ok"}],
            finish="STOP",
            usage={"promptTokenCount": 3, "candidatesTokenCount": 1, "totalTokenCount": 4},
        )
        out = upstream_response_to_openai(raw, "agent-abc", "gemini-2.5-pro", include_reasoning=False)
        self.assertEqual(out["object"], "chat.completion")
        self.assertEqual(out["id"], "chatcmpl-agent-abc")
        self.assertEqual(out["choices"][0]["message"]["content"], "ok")
        self.assertEqual(out["choices"][0]["finish_reason"], "stop")
        self.assertEqual(out["usage"]["total_tokens"], 4)

    def test_non_stream_reasoning_and_tool_calls(self) -> None:
        raw = _wrap(
            [
                {"text": "thinking...", "thought": True},
                {"thoughtSignature": "sig-only"},
                {"functionCall": {"name": "lookup", "args": {"q": "x"}}},
            ],
            finish="STOP",
        )
        out = upstream_response_to_openai(raw, "r", "m", include_reasoning=True)
        message = out["choices"][0]["message"]
        self.assertEqual(message["reasoning_content"], "thinking...")
        self.assertEqual(message["content"], "")
        self.assertEqual(message["tool_calls"][0]["function"], {"name": "lookup", "arguments": "{\"q\":\"x\"}"})
        self.assertEqual(out["choices"][0]["finish_reason"], "tool_calls")

        hidden = upstream_response_to_openai(raw, "r", "m", include_reasoning=False)
        self.assertNotIn("reasoning_content", hidden["choices"][0]["message"])

    def test_signature_alone_does_not_make_a_thought(self) -> None:
        raw = _wrap([{"text": "visible", "thoughtSignature": "sig"}], finish="STOP")
        out = upstream_response_to_openai(raw, "r", "m", include_reasoning=True)
        self.assertEqual(out["choices"][0]["message"]["content"], "visible")
        self.assertNotIn("reasoning_content", out["choices"][0]["message"])

    def test_finish_reason_mapping(self) -> None:
        cases = {"MAX_TOKENS": "length", "SAFETY": "content_filter", "RECITATION": "content_filter", "OTHER": "stop"}
        for upstream, expected in cases.items():
            out = upstream_response_to_openai(_wrap([{"text": "x"}], finish=upstream), "r", "m", False)
            self.assertEqual(out["choices"][0]["finish_reason"], expected, upstream)

    def test_stream_thought_and_text_yield_separate_chunks(self) -> None:
        event = json.dumps(
            _wrap(
                [{"text": "plan", "thought": True}, {"text": "answer"}],
                finish="STOP",
                usage={"promptTokenCount": 1, "candidatesTokenCount": 2, "totalTokenCount": 3},
            )
        )
        chunks = upstream_event_to_openai_chunks(event, "r", "m", include_reasoning=True)
        deltas = [c["choices"][0]["delta"] for c in chunks]

        self.assertEqual(len(chunks), 3)
        self.assertEqual(deltas[0].get("reasoning_content"), "plan")
        self.assertEqual(deltas[1].get("content"), "answer")
        for delta in deltas:
            self.assertFalse("content" in delta and "reasoning_content" in delta)
        self.assertEqual(deltas[2], {})
        self.assertEqual(chunks[2]["choices"][0]["finish_reason"], "stop")
        self.assertEqual(chunks[2]["usage"]["total_tokens"], 3)
        for chunk in chunks[:2]:
            self.assertIsNone(chunk["choices"][0]["finish_reason"])

    def test_stream_without_reasoning_drops_thoughts(self) -> None:
        event = _wrap([{"text": "plan", "thought": True}, {"text": "answer"}], finish="STOP")
        chunks = upstream_event_to_openai_chunks(event, "r", "m", include_reasoning=False)
        for chunk in chunks:
            self.assertNotIn("reasoning_content", chunk["choices"][0]["delta"])
        self.assertEqual(chunks[0]["choices"][0]["delta"]["content"], "answer")

    def test_malformed_event_yields_nothing(self) -> None:
        self.assertEqual(upstream_event_to_openai_chunks("{not json", "r", "m", True), [])
        self.assertEqual(upstream_event_to_openai_chunks("[]", "r", "m", True), [])

    def test_stream_tool_calls_get_distinct_indexes(self) -> None:
        event = _wrap(
            [
                {"functionCall": {"name": "lookup", "args": {"q": 1}, "id": "call_a"}},
                {"functionCall": {"name": "fetch", "args": {}, "id": "call_b"}},
            ],
            finish="STOP",
        )
        chunks = upstream_event_to_openai_chunks(event, "r", "m", False)
        calls = [c["choices"][0]["delta"]["tool_calls"][0] for c in chunks if "tool_calls" in c["choices"][0]["delta"]]
        self.assertEqual([(c["index"], c["id"]) for c in calls], [(0, "call_a"), (1, "call_b")])
        self.assertEqual(chunks[-1]["choices"][0]["finish_reason"], "tool_calls")

    def test_stream_tool_call_index_continues_across_events(self) -> None:
        later = _wrap([{"functionCall": {"name": "fetch", "args": {}}}], finish="STOP")
        chunks = upstream_event_to_openai_chunks(later, "r", "m", False, tool_call_offset=2)
        self.assertEqual(chunks[0]["choices"][0]["delta"]["tool_calls"][0]["index"], 2)

        finish_only = upstream_event_to_openai_chunks(_wrap([], finish="STOP"), "r", "m", False, tool_call_offset=1)
        self.assertEqual(finish_only[-1]["choices"][0]["finish_reason"], "tool_calls")


# ---------------------------------------------------------------------------
# usage / Gemini / 模型列表
# ---------------------------------------------------------------------------


class TestUsageAndGemini(unittest.TestCase):
    def test_extract_usage_exact_mapping(self) -> None:
        usage = {
            "promptTokenCount": 1,
            "candidatesTokenCount": 2,
            "totalTokenCount": 3,
            "thoughtsTokenCount": 4,
        }
        for source in (_wrap([], usage=usage), {"usageMetadata": usage}, json.dumps(_wrap([], usage=usage))):
            tally = extract_usage(source)
            self.assertEqual(
                tally.as_dict(),
                {"promptTokens": 1, "completionTokens": 2, "totalTokens": 3, "thinkingTokens": 4},
            )

    def test_extract_usage_missing_is_empty(self) -> None:
        self.assertTrue(extract_usage({"response": {"candidates": []}}).is_empty)
        self.assertTrue(extract_usage("garbage").is_empty)

    def test_extract_usage_tolerates_out_of_range_counts(self) -> None:
        tally = extract_usage('{"response": {"usageMetadata": {"promptTokenCount": 2, "totalTokenCount": 1e999}}}')
        self.assertEqual(tally.prompt_tokens, 2)
        self.assertEqual(tally.total_tokens, 0)

        event = _wrap([{"text": "ok"}], finish="STOP", usage={"totalTokenCount": float("inf")})
        chunks = upstream_event_to_openai_chunks(event, "r", "m", False)
        self.assertEqual(chunks[0]["choices"][0]["delta"]["content"], "ok")

    def test_gemini_response_filters_thoughts(self) -> None:
        raw = _wrap([{"text": "t", "thought": True}, {"text": "a"}], finish="STOP", usage={"totalTokenCount": 5})
        out = upstream_response_to_gemini(raw, include_thoughts=False)
        self.assertEqual(out["candidates"][0]["content"]["parts"], [{"text": "a"}])
        self.assertEqual(out["candidates"][0]["finishReason"], "STOP")
        self.assertEqual(out["usageMetadata"], {"totalTokenCount": 5})

    def test_gemini_stream_splits_finish(self) -> None:
        chunks = upstream_event_to_gemini_chunks(_wrap([{"text": "a"}], finish="STOP"), include_thoughts=False)
        self.assertEqual(len(chunks), 2)
        self.assertNotIn("finishReason", chunks[0]["candidates"][0])
        self.assertEqual(chunks[1]["candidates"][0]["finishReason"], "STOP")
        self.assertEqual(chunks[1]["candidates"][0]["content"]["parts"], [])

    def test_model_catalog_shape(self) -> None:
        catalog = list_models()
        self.assertEqual(catalog["object"], "list")
        self.assertTrue(catalog["data"])
        for entry in catalog["data"]:
            self.assertEqual(set(entry), {"id", "object", "created", "owned_by"})
            self.assertEqual(entry["object"], "model")


if __name__ == "__main__":
    unittest.main()
