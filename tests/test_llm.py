import unittest
import asyncio
import json
import os
import sys
from pathlib import Path
from unittest.mock import patch

import httpx
from pydantic import ValidationError as PydanticValidationError

sys.path.insert(0, str(Path(__file__).parent.parent))
from flowlet import Context, LLMError, Node, NodeExecutionError, RateLimitError
from flowlet import observability
from flowlet.cache import Cache
from flowlet.llm import LlmClient, LlmOptions, LlmProvider
from flowlet.tokens import CostTracker


class RecordingHandler:
    """httpx.MockTransport handler returning canned responses and keeping the requests."""
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)

    def body(self, i=-1):
        return json.loads(self.requests[i].content)


def openai_reply(text="hello", prompt_tokens=12, completion_tokens=3):
    return httpx.Response(200, json={
        "choices": [{"message": {"role": "assistant", "content": text}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    })


def make_client(handler, provider=LlmProvider.OPENAI, **kwargs):
    kwargs.setdefault("api_key", "test-key")
    return LlmClient(provider, transport=httpx.MockTransport(handler), cache=Cache(), cost_tracker=CostTracker(), **kwargs)


class LlmTestCase(unittest.TestCase):
    def setUp(self):
        self.addCleanup(observability.observer.clear)

    def run_client(self, client, call):
        async def scenario():
            async with client:
                return await call(client)
        return asyncio.run(scenario())


class TestOpenAICompatible(LlmTestCase):
    def test_chat_request_and_response(self):
        handler = RecordingHandler(openai_reply("hi there"))
        client = make_client(handler)
        messages = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hello"}]
        text = self.run_client(client, lambda c: c.chat(messages, temperature=0.2))

        self.assertEqual(text, "hi there")
        request = handler.requests[0]
        self.assertEqual(str(request.url), "https://api.openai.com/v1/chat/completions")
        self.assertEqual(request.headers["Authorization"], "Bearer test-key")
        self.assertEqual(handler.body(), {"model": "gpt-4o-mini", "messages": messages, "temperature": 0.2})

    def test_usage_tracked_and_metrics_recorded(self):
        client = make_client(RecordingHandler(openai_reply(prompt_tokens=1000, completion_tokens=2000)))
        self.run_client(client, lambda c: c.generate("hello"))
        self.assertEqual(client.cost_tracker.total_input_tokens, 1000)
        self.assertEqual(client.cost_tracker.total_output_tokens, 2000)
        summary = observability.observer.metrics_summary()
        self.assertEqual(summary["llm_input_tokens"]["sum"], 1000.0)
        self.assertEqual(summary["llm_output_tokens"]["sum"], 2000.0)
        self.assertEqual(observability.observer.spans[-1].name, "llm_chat")

    def test_missing_usage_is_estimated(self):
        handler = RecordingHandler(httpx.Response(200, json={"choices": [{"message": {"content": "x" * 40}}]}))
        client = make_client(handler)
        self.run_client(client, lambda c: c.generate("y" * 80))
        self.assertEqual(client.cost_tracker.total_input_tokens, 20)
        self.assertEqual(client.cost_tracker.total_output_tokens, 10)

    def test_options_forwarded(self):
        handler = RecordingHandler(openai_reply())
        client = make_client(handler, model="gpt-4o")
        options = LlmOptions(temperature=0.0, max_tokens=50, top_p=0.9)
        self.run_client(client, lambda c: c.chat_with_options([{"role": "user", "content": "q"}], options))
        body = handler.body()
        self.assertEqual((body["model"], body["max_tokens"], body["top_p"]), ("gpt-4o", 50, 0.9))

    def test_responses_are_cached(self):
        handler = RecordingHandler(openai_reply("first"), openai_reply("second"))
        client = make_client(handler)

        async def twice(c):
            return [await c.generate("same prompt"), await c.generate("same prompt")]

        self.assertEqual(self.run_client(client, twice), ["first", "first"])
        self.assertEqual(len(handler.requests), 1)

    def test_cache_can_be_bypassed(self):
        handler = RecordingHandler(openai_reply("first"), openai_reply("second"))
        client = make_client(handler)
        options = LlmOptions(use_cache=False)
        messages = [{"role": "user", "content": "same"}]

        async def twice(c):
            return [await c.chat_with_options(messages, options), await c.chat_with_options(messages, options)]

        self.assertEqual(self.run_client(client, twice), ["first", "second"])

    def test_ollama_defaults_without_auth(self):
        handler = RecordingHandler(openai_reply())
        client = make_client(handler, provider=LlmProvider.OLLAMA, api_key="")
        self.run_client(client, lambda c: c.generate("hi"))
        request = handler.requests[0]
        self.assertEqual(str(request.url), "http://localhost:11434/v1/chat/completions")
        self.assertNotIn("Authorization", request.headers)
        self.assertEqual(handler.body()["model"], "llama3")

    def test_api_key_from_environment(self):
        with patch.dict(os.environ, {"OPENAI_API_KEY": "env-key"}):
            client = LlmClient(LlmProvider.OPENAI, transport=httpx.MockTransport(RecordingHandler(openai_reply())))
        self.assertEqual(client.api_key, "env-key")
        asyncio.run(client.aclose())


class TestAnthropic(LlmTestCase):
    def test_messages_api(self):
        handler = RecordingHandler(httpx.Response(200, json={
            "content": [{"type": "text", "text": "Bonjour"}],
            "usage": {"input_tokens": 7, "output_tokens": 2},
        }))
        client = make_client(handler, provider=LlmProvider.ANTHROPIC)
        messages = [{"role": "system", "content": "translate"}, {"role": "user", "content": "hello"}]
        text = self.run_client(client, lambda c: c.chat(messages))

        self.assertEqual(text, "Bonjour")
        request = handler.requests[0]
        self.assertEqual(str(request.url), "https://api.anthropic.com/v1/messages")
        self.assertEqual(request.headers["x-api-key"], "test-key")
        self.assertEqual(request.headers["anthropic-version"], "2023-06-01")
        body = handler.body()
        self.assertEqual(body["system"], "translate")
        self.assertEqual(body["messages"], [{"role": "user", "content": "hello"}])
        self.assertEqual(body["max_tokens"], 4096)
        self.assertEqual(client.cost_tracker.summary()["by_model"]["claude-3-5-sonnet-20241022"]["input_tokens"], 7)
        self.assertGreater(client.cost_tracker.total_cost, 0)


class TestGoogle(LlmTestCase):
    def test_generate_content_api(self):
        handler = RecordingHandler(httpx.Response(200, json={
            "candidates": [{"content": {"parts": [{"text": "Hola"}], "role": "model"}}],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1},
        }))
        client = make_client(handler, provider=LlmProvider.GOOGLE)
        messages = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hey"},
                    {"role": "user", "content": "translate"}]
        text = self.run_client(client, lambda c: c.chat(messages))

        self.assertEqual(text, "Hola")
        request = handler.requests[0]
        self.assertEqual(request.url.path, "/v1beta/models/gemini-1.5-flash:generateContent")
        self.assertEqual(request.url.params["key"], "test-key")
        self.assertEqual([c["role"] for c in handler.body()["contents"]], ["user", "model", "user"])
        self.assertEqual(client.cost_tracker.total_output_tokens, 1)


class TestEmbeddings(LlmTestCase):
    def test_embeddings_in_order_with_cache(self):
        handler = RecordingHandler(
            httpx.Response(200, json={"data": [
                {"index": 1, "embedding": [0.0, 1.0]},
                {"index": 0, "embedding": [1.0, 0.0]},
            ]}),
            httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.5, 0.5]}]}),
        )
        client = make_client(handler)

        async def scenario(c):
            first = await c.embeddings(["a", "b"])
            second = await c.embeddings(["b", "c"])
            return first, second

        first, second = self.run_client(client, scenario)
        self.assertEqual(first, [[1.0, 0.0], [0.0, 1.0]])
        self.assertEqual(second, [[0.0, 1.0], [0.5, 0.5]])
        self.assertEqual(handler.body(0), {"model": "text-embedding-3-small", "input": ["a", "b"]})
        self.assertEqual(handler.body(1)["input"], ["c"])

    def test_unsupported_provider(self):
        client = make_client(RecordingHandler(openai_reply()), provider=LlmProvider.ANTHROPIC)
        with self.assertRaises(LLMError):
            self.run_client(client, lambda c: c.embeddings(["a"]))


class TestErrors(LlmTestCase):
    def test_rate_limit(self):
        client = make_client(RecordingHandler(httpx.Response(429, headers={"Retry-After": "12"}, text="slow down")))
        with self.assertRaises(RateLimitError) as cm:
            self.run_client(client, lambda c: c.generate("hi"))
        self.assertEqual(cm.exception.retry_after, 12.0)
        self.assertEqual(cm.exception.status_code, 429)
        self.assertEqual(cm.exception.response_body, "slow down")

    def test_rate_limit_default_retry_after(self):
        client = make_client(RecordingHandler(httpx.Response(429)))
        with self.assertRaises(RateLimitError) as cm:
            self.run_client(client, lambda c: c.generate("hi"))
        self.assertEqual(cm.exception.retry_after, 60.0)

    def test_http_error_status(self):
        client = make_client(RecordingHandler(httpx.Response(500, text="oops")))
        with self.assertRaises(LLMError) as cm:
            self.run_client(client, lambda c: c.generate("hi"))
        self.assertEqual((cm.exception.status_code, cm.exception.provider), (500, "openai"))
        self.assertNotIsInstance(cm.exception, RateLimitError)

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(LLMError):
            self.run_client(make_client(handler), lambda c: c.generate("hi"))

    def test_malformed_response(self):
        client = make_client(RecordingHandler(httpx.Response(200, json={"unexpected": True})))
        with self.assertRaises(LLMError):
            self.run_client(client, lambda c: c.generate("hi"))

    def test_invalid_options(self):
        with self.assertRaises(PydanticValidationError):
            LlmOptions(temperature=5.0)

    def test_node_retries_llm_failures(self):
        handler = RecordingHandler(httpx.Response(503), openai_reply("recovered"))
        client = make_client(handler)

        async def exec_(ctx, params, prompt):
            return await client.generate(prompt)

        async def scenario():
            node = Node(prep=lambda c, p: "hello", exec=exec_, post=lambda c, p, pr, er: c.set("answer", er),
                        max_retries=2)
            ctx = Context()
            async with client:
                await node.run(ctx)
            return ctx

        ctx = asyncio.run(scenario())
        self.assertEqual(ctx["answer"], "recovered")
        self.assertEqual(len(handler.requests), 2)

    def test_node_surfaces_exhausted_llm_failure(self):
        client = make_client(RecordingHandler(httpx.Response(503)))

        async def exec_(ctx, params, prep_res):
            return await client.generate("hi")

        async def scenario():
            async with client:
                await Node(exec=exec_, max_retries=2).run()

        with self.assertRaises(NodeExecutionError) as cm:
            asyncio.run(scenario())
        self.assertIsInstance(cm.exception.__cause__, LLMError)


if __name__ == '__main__':
    unittest.main()
