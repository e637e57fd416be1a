import unittest
from unittest import mock

import requests

from regintel.analysis.llm_client import LLMClient, parse_json_text
from regintel.config import Settings
from regintel.errors import InvalidResponseError, ServiceUnavailable, TransientFetchError


def _response(status=200, payload=None):
    resp = mock.Mock()
    resp.status_code = status
    resp.text = "error body"
    resp.json.return_value = payload if payload is not None else {}
    return resp


class TestParseJsonText(unittest.TestCase):
    def test_strips_code_fences(self):
        self.assertEqual(parse_json_text('```json\n{"a": 1}\n```'), {"a": 1})

    def test_rejects_non_object(self):
        with self.assertRaises(InvalidResponseError):
            parse_json_text("[1, 2]")
        with self.assertRaises(InvalidResponseError):
            parse_json_text("not json")


class TestLLMClient(unittest.TestCase):
    def setUp(self):
        self.session = mock.Mock()
        self.client = LLMClient(provider="openai", api_key="sk-test", model="gpt-4o-mini", session=self.session)

    def test_openai_json_mode(self):
        self.session.post.return_value = _response(
            payload={"choices": [{"message": {"content": '{"pediatric_relevant": false}'}}]}
        )
        self.assertEqual(self.client.complete_json("sys", "user"), {"pediatric_relevant": False})
        body = self.session.post.call_args.kwargs["json"]
        self.assertEqual(body["response_format"], {"type": "json_object"})
        self.assertEqual(self.session.post.call_args.kwargs["timeout"], 120)

    def test_anthropic_shape(self):
        client = LLMClient(provider="anthropic", api_key="k", model="claude", session=self.session)
        self.session.post.return_value = _response(payload={"content": [{"text": '{"ok": true}'}]})
        self.assertEqual(client.complete_json("sys", "user"), {"ok": True})
        self.assertEqual(self.session.post.call_args.kwargs["headers"]["x-api-key"], "k")

    def test_error_mapping(self):
        self.session.post.return_value = _response(status=503)
        with self.assertRaises(TransientFetchError):
            self.client.complete_json("s", "u")
        self.session.post.return_value = _response(status=401)
        with self.assertRaises(ServiceUnavailable):
            self.client.complete_json("s", "u")
        self.session.post.side_effect = requests.Timeout("read timeout")
        with self.assertRaises(TransientFetchError):
            self.client.complete_json("s", "u")

    def test_unconfigured(self):
        client = LLMClient(provider="", api_key="", model="", session=self.session)
        self.assertFalse(client.is_available())
        with self.assertRaises(ServiceUnavailable):
            client.complete_json("s", "u")
        self.session.post.assert_not_called()

    def test_from_settings_prefers_openai(self):
        settings = Settings(openai_api_key="sk", anthropic_api_key="ak")
        self.assertEqual(LLMClient.from_settings(settings).provider, "openai")
        settings = Settings(anthropic_api_key="ak")
        client = LLMClient.from_settings(settings)
        self.assertEqual((client.provider, client.model), ("anthropic", settings.anthropic_model))


if __name__ == "__main__":
    unittest.main()
