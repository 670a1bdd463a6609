import json
import os
import unittest
from unittest.mock import patch

import requests

import tutor

LLM_URL = "http://llm.example.test/v1/chat/completions"


class _FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(response=self)


class LlmFallbackUnitTests(unittest.TestCase):
    def setUp(self):
        self._env = patch.dict(os.environ, {"LLM_URL": LLM_URL, "SEND_MAX_TOKENS": "true"})
        self._env.start()

    def tearDown(self):
        self._env.stop()

    def test_fallback_retries_with_expected_payloads(self):
        messages = [{"role": "user", "content": "Hello"}]

        expected_timeout = tutor._safe_int("LLM_TIMEOUT", 20)
        expected_base_payload = {
            "model": tutor.MODEL_ID,
            "messages": messages,
            **tutor._base_params(),
            "max_tokens": 99,
        }
        minimal_payload = {
            "model": tutor.MODEL_ID,
            "messages": messages,
            "max_tokens": 99,
        }

        calls = []

        def _fake_post(url, json=None, headers=None, timeout=None):
            calls.append({"url": url, "json": json, "timeout": timeout})
            if len(calls) == 1:
                return _FakeResponse(400, {"error": "invalid"})
            return _FakeResponse(
                200,
                {
                    "choices": [{"message": {"content": "Answer"}}],
                    "usage": {"prompt_tokens": 12, "completion_tokens": 3},
                },
            )

        with patch("tutor.requests.post", side_effect=_fake_post), patch("tutor._LLM_LOGGER") as llm_logger:
            result = tutor.chat_completion(messages, 99, purpose="question", user_id="u1")

        self.assertEqual(result.text, "Answer")
        self.assertEqual((result.tokens_in, result.tokens_out), (12, 3))
        self.assertEqual(len(calls), 2)

        first_call, second_call = calls
        self.assertEqual(first_call["url"], LLM_URL)
        self.assertEqual(first_call["json"], expected_base_payload)
        self.assertEqual(first_call["timeout"], expected_timeout)
        self.assertEqual(second_call["json"], minimal_payload)

        record = json.loads(llm_logger.info.call_args[0][0])
        self.assertEqual(record["event"], "llm_call")
        self.assertEqual(record["purpose"], "question")
        self.assertEqual(record["user_id"], "u1")
        self.assertEqual(record["status"], "ok")

    def test_http_error_becomes_unavailable(self):
        with patch("tutor.requests.post", return_value=_FakeResponse(500, {"error": "boom"})), patch(
            "tutor._LLM_LOGGER"
        ) as llm_logger:
            with self.assertRaises(tutor.LLMUnavailableError):
                tutor.chat_completion([{"role": "user", "content": "Hi"}], 10)

        record = json.loads(llm_logger.info.call_args[0][0])
        self.assertEqual(record["status"], "error")

    def test_max_tokens_can_be_suppressed(self):
        captured = {}

        def _fake_post(url, json=None, headers=None, timeout=None):
            captured.update(json)
            return _FakeResponse(200, {"choices": [{"text": "legacy"}]})

        with patch.dict(os.environ, {"SEND_MAX_TOKENS": "false"}), patch(
            "tutor.requests.post", side_effect=_fake_post
        ), patch("tutor._LLM_LOGGER"):
            result = tutor.chat_completion([{"role": "user", "content": "Hi"}], 10)

        self.assertEqual(result.text, "legacy")
        self.assertNotIn("max_tokens", captured)


class UnconfiguredLlmTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_url_raises_unavailable(self):
        with patch.dict(os.environ, {"LLM_URL": ""}), patch("tutor._LLM_LOGGER"):
            self.assertFalse(tutor.is_configured())
            with self.assertRaises(tutor.LLMUnavailableError):
                await tutor.complete([{"role": "user", "content": "Hi"}], 10)


class PromptTests(unittest.TestCase):
    def test_hint_prompt_lists_previous_hints(self):
        messages = tutor.hint_messages(
            "Solve 2x+3=9",
            classification="linear_equation",
            depth=2,
            intent="more",
            previous_hints=["Move numbers to one side."],
        )

        self.assertIn("WITHOUT giving the direct answer", messages[0]["content"])
        self.assertIn("- Move numbers to one side.", messages[0]["content"])
        self.assertIn("Solve 2x+3=9", messages[1]["content"])


if __name__ == "__main__":
    unittest.main()
