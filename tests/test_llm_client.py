import json
import unittest
from types import SimpleNamespace
from unittest.mock import patch


def _response(content, model="fake-model"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=7, total_tokens=19),
        model=model,
    )


class _FakeOpenAI:
    """Stands in for openai.OpenAI; replies are queued per test."""

    replies = []
    calls = []

    def __init__(self, api_key=None, base_url=None, timeout=None):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        _FakeOpenAI.calls.append(kwargs)
        reply = _FakeOpenAI.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class TestLLMClientInit(unittest.TestCase):
    def test_deepseek_provider_initializes_client(self):
        with patch("llm.client.OpenAI", _FakeOpenAI):
            from llm.client import LLMClient

            c = LLMClient(api_key="sk-test", base_url="https://api.deepseek.com/v1", model="deepseek-chat", provider="deepseek")
            self.assertIsNotNone(c.client)
            self.assertEqual(c.client.api_key, "sk-test")
            self.assertEqual(c.client.base_url, "https://api.deepseek.com/v1")

    def test_missing_base_url_does_not_initialize_client(self):
        with patch("llm.client.OpenAI", _FakeOpenAI), patch.dict("os.environ", {}, clear=True):
            from llm.client import LLMClient

            c = LLMClient(api_key="sk-test", base_url=None, model="deepseek-chat", provider="deepseek")
            self.assertIsNone(c.client)

    def test_ollama_without_key_uses_placeholder(self):
        with patch("llm.client.OpenAI", _FakeOpenAI):
            from llm.client import LLMClient

            c = LLMClient(api_key=None, base_url="http://localhost:11434/v1", model="llama3", provider="ollama")
            self.assertIsNotNone(c.client)
            self.assertEqual(c.client.api_key, "ollama")

    def test_uninitialized_client_raises_capability_error(self):
        with patch("llm.client.OpenAI", _FakeOpenAI), patch.dict("os.environ", {}, clear=True):
            from llm.client import LLMClient
            from pipeline.capabilities import TranslationRequest
            from pipeline.errors import CapabilityError

            c = LLMClient(api_key=None, provider="openai")
            with self.assertRaises(CapabilityError) as ctx:
                c.translate(TranslationRequest("Hi", "sys", "user", "gpt-4o"))
            self.assertFalse(ctx.exception.retryable)


class TestLLMClientCalls(unittest.TestCase):
    def setUp(self):
        _FakeOpenAI.replies = []
        _FakeOpenAI.calls = []
        self.patcher = patch("llm.client.OpenAI", _FakeOpenAI)
        self.patcher.start()
        from llm.client import LLMClient

        self.client = LLMClient(api_key="sk-test", model="gpt-4o-mini", temperature=0.3)

    def tearDown(self):
        self.patcher.stop()

    def test_translate_strips_code_fences(self):
        from pipeline.capabilities import TranslationRequest

        _FakeOpenAI.replies = [_response("```\nHallo {1} Welt\n```")]
        result = self.client.translate(TranslationRequest("Hello {1} world", "sys", "user", "gpt-4o", 0.1))

        self.assertEqual(result.translated_text, "Hallo {1} Welt")
        self.assertEqual(result.token_count.total, 19)
        self.assertEqual(result.model, "fake-model")
        call = _FakeOpenAI.calls[0]
        self.assertEqual(call["model"], "gpt-4o")
        self.assertEqual(call["temperature"], 0.1)
        self.assertEqual(call["messages"][0], {"role": "system", "content": "sys"})
        self.assertNotIn("response_format", call)

    def test_default_temperature_is_used(self):
        from pipeline.capabilities import TranslationRequest

        _FakeOpenAI.replies = [_response("Hallo")]
        self.client.translate(TranslationRequest("Hello", "sys", "user", ""))

        self.assertEqual(_FakeOpenAI.calls[0]["temperature"], 0.3)
        self.assertEqual(_FakeOpenAI.calls[0]["model"], "gpt-4o-mini")

    def test_empty_translation_is_an_error(self):
        from pipeline.capabilities import TranslationRequest
        from pipeline.errors import CapabilityError

        _FakeOpenAI.replies = [_response("   ")]
        with self.assertRaises(CapabilityError):
            self.client.translate(TranslationRequest("Hello", "sys", "user", "gpt-4o"))

    def test_reply_without_choices_is_a_capability_error(self):
        from pipeline.capabilities import ReviewRequest, TranslationRequest
        from pipeline.errors import CapabilityError

        _FakeOpenAI.replies = [SimpleNamespace(choices=[], usage=None, model="fake-model")] * 2
        with self.assertRaises(CapabilityError):
            self.client.translate(TranslationRequest("Hello", "sys", "user", "gpt-4o"))
        with self.assertRaises(CapabilityError):
            self.client.review(ReviewRequest("Hello", "Hallo", "en", "de"))

    def test_provider_error_becomes_capability_error(self):
        from openai import OpenAIError
        from pipeline.capabilities import TranslationRequest
        from pipeline.errors import CapabilityError

        _FakeOpenAI.replies = [OpenAIError("rate limited")]
        with self.assertRaises(CapabilityError) as ctx:
            self.client.translate(TranslationRequest("Hello", "sys", "user", "gpt-4o"))
        self.assertIn("rate limited", ctx.exception.message)
        self.assertTrue(ctx.exception.retryable)

    def test_review_parses_json(self):
        from pipeline.capabilities import ReviewRequest

        payload = {
            "suggestedTranslation": "Hallo Welt",
            "issues": [{"type": "fluency", "severity": "low", "description": "stiff"}, "garbage"],
            "scores": [{"type": "overall", "score": 91}],
        }
        _FakeOpenAI.replies = [_response("Here you go:\n```json\n" + json.dumps(payload) + "\n```")]
        result = self.client.review(ReviewRequest(
            "Hello world", "Hallo Welt", "en", "de",
            context_segments=[{"original": "Bye", "translation": "Tschüss"}],
        ))

        self.assertEqual(result.suggested_translation, "Hallo Welt")
        self.assertEqual(len(result.issues), 1)
        self.assertEqual(result.scores[0]["score"], 91)
        self.assertEqual(result.metadata["tokens"]["total"], 19)
        call = _FakeOpenAI.calls[0]
        self.assertEqual(call["response_format"], {"type": "json_object"})
        prompt = call["messages"][1]["content"]
        self.assertIn("Hello world", prompt)
        self.assertIn("Translation: Tschüss", prompt)

    def test_review_without_json_is_an_error(self):
        from pipeline.capabilities import ReviewRequest
        from pipeline.errors import CapabilityError

        _FakeOpenAI.replies = [_response("Looks fine to me.")]
        with self.assertRaises(CapabilityError):
            self.client.review(ReviewRequest("Hello", "Hallo", "en", "de"))

    def test_custom_review_prompt_placeholders(self):
        from pipeline.capabilities import ReviewRequest

        prompt = self.client.build_review_prompt(ReviewRequest(
            "Hello", "Hallo", "en", "de",
            custom_prompt="Check {SOURCE_LANGUAGE}>{TARGET_LANGUAGE}: {ORIGINAL_CONTENT} / {TRANSLATED_CONTENT}",
        ))
        self.assertEqual(prompt, "Check en>de: Hello / Hallo")


if __name__ == "__main__":
    unittest.main()
