"""
Unit tests for `learnflow/llm_cloud/service.py` – the deadline-aware AIService facade.

The OpenAI SDK client is replaced by a `MagicMock` whose `chat.completions.create` is an
`AsyncMock`, the same shape the real `AsyncOpenAI` client exposes. No network requests are
made. SDK exceptions are constructed with `httpx` request/response objects, which is what
the SDK itself does, to check that each maps onto the right AI Service error.
"""

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai

from fakes import make_config
from learnflow.llm_cloud import AIRateLimited, AIService, AITimeout, AIUnavailable
from learnflow.shared.deadline import Deadline
from learnflow.shared.models import Mode

REQUEST = httpx.Request("POST", "https://llm.example.test/v1/chat/completions")


def _client(content="An answer.", side_effect=None):
    client = MagicMock()
    mock_response = MagicMock()
    mock_response.choices[0].message.content = content
    client.chat.completions.create = AsyncMock(return_value=mock_response, side_effect=side_effect)
    return client


class TestAIService(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.config = make_config()

    async def test_complete_returns_stripped_content(self):
        client = _client("  Recursion is self-reference.  ")
        service = AIService(config=self.config, client=client)

        reply = await service.complete("explain recursion", Mode.EXAM, 5000, Deadline.after(5))

        self.assertEqual(reply, "Recursion is self-reference.")
        kwargs = client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], self.config["llm"]["models"]["tutor"]["name"])
        # Capped by the model's configured ceiling
        self.assertEqual(kwargs["max_tokens"], self.config["llm"]["models"]["tutor"]["settings"]["max_tokens"])
        system = kwargs["messages"][0]["content"]
        self.assertIn(self.config["modes"]["instructions"]["exam"], system)

    async def test_utility_calls_use_the_utility_model_without_mode_instruction(self):
        client = _client()
        service = AIService(config=self.config, client=client)

        await service.complete("summarize", None, 50, Deadline.after(5), model="utility")

        kwargs = client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], self.config["llm"]["models"]["utility"]["name"])
        self.assertEqual(kwargs["max_tokens"], 50)
        self.assertEqual(kwargs["messages"][0]["content"], "You are a programming learning assistant.")

    async def test_empty_completion_is_unavailable(self):
        service = AIService(config=self.config, client=_client("   "))
        with self.assertRaises(AIUnavailable):
            await service.complete("explain", Mode.CONCEPT, 100, Deadline.after(5))

    async def test_expired_deadline_fails_without_calling_the_provider(self):
        client = _client()
        service = AIService(config=self.config, client=client)

        with self.assertRaises(AITimeout):
            await service.complete("explain", Mode.CONCEPT, 100, Deadline.after(0))
        client.chat.completions.create.assert_not_called()

    async def test_slow_provider_is_cut_off_at_the_deadline(self):
        async def slow(**kwargs):
            await asyncio.sleep(5)

        service = AIService(config=self.config, client=_client(side_effect=slow))

        with self.assertRaises(AITimeout):
            await service.complete("explain", Mode.CONCEPT, 100, Deadline.after(0.05))

    async def test_sdk_errors_are_mapped(self):
        cases = [
            (openai.RateLimitError("slow down", response=httpx.Response(429, request=REQUEST), body=None), AIRateLimited),
            (openai.APITimeoutError(request=REQUEST), AITimeout),
            (openai.APIConnectionError(request=REQUEST), AIUnavailable),
        ]
        for error, expected in cases:
            with self.subTest(error=type(error).__name__):
                service = AIService(config=self.config, client=_client(side_effect=error))
                with self.assertRaises(expected):
                    await service.complete("explain", Mode.CONCEPT, 100, Deadline.after(5))

    async def test_client_creation_failure_is_unavailable(self):
        def factory():
            raise RuntimeError("Missing required environment variable")

        service = AIService(config=self.config, client_factory=factory)

        with self.assertRaises(AIUnavailable):
            await service.complete("explain", Mode.CONCEPT, 100, Deadline.after(5))


if __name__ == "__main__":
    unittest.main()
