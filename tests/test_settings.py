import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from keyring.errors import KeyringError, NoKeyringError


class TestKeyringManager(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.fallback = os.path.join(self.test_dir, "secrets.json")

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_uses_system_keyring(self):
        with patch("pipeline.settings.keyring") as mock_keyring:
            from pipeline.settings import KeyringManager

            mock_keyring.get_password.return_value = "sk-stored"
            manager = KeyringManager(self.fallback)
            manager.set_secret("ai_configs", "openai", "sk-new")

            self.assertFalse(manager.use_fallback)
            mock_keyring.set_password.assert_called_once_with("XLIFF_Pipeline_ai_configs", "openai", "sk-new")
            self.assertEqual(manager.get_secret("ai_configs", "openai"), "sk-stored")
            self.assertFalse(os.path.exists(self.fallback))

    def test_falls_back_to_file_without_backend(self):
        with patch("pipeline.settings.keyring") as mock_keyring:
            from pipeline.settings import KeyringManager

            mock_keyring.get_password.side_effect = NoKeyringError("no backend")
            manager = KeyringManager(self.fallback)
            manager.set_secret("ai_configs", "deepseek", "sk-secret")

            self.assertTrue(manager.use_fallback)
            self.assertEqual(manager.get_secret("ai_configs", "deepseek"), "sk-secret")
            with open(self.fallback, encoding="utf-8") as f:
                self.assertNotIn("sk-secret", f.read())

    def test_write_failure_switches_to_fallback(self):
        with patch("pipeline.settings.keyring") as mock_keyring:
            from pipeline.settings import KeyringManager

            mock_keyring.get_password.return_value = None
            mock_keyring.set_password.side_effect = KeyringError("locked")
            manager = KeyringManager(self.fallback)
            manager.set_secret("ai_configs", "openai", "sk-x")

            self.assertTrue(manager.use_fallback)
            self.assertEqual(manager.get_secret("ai_configs", "openai"), "sk-x")


class _MemoryKeyring:
    def __init__(self):
        self.secrets = {}

    def get_secret(self, service, key):
        return self.secrets.get((service, key))

    def set_secret(self, service, key, value):
        self.secrets[(service, key)] = value


class TestSettingsManager(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.config_file = os.path.join(self.test_dir, "config.json")

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def _manager(self, config=None):
        from pipeline.settings import SettingsManager

        if config is not None:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(config, f)
        return SettingsManager(self.config_file, keyring_manager=_MemoryKeyring())

    def test_defaults_without_config_file(self):
        manager = self._manager()

        self.assertEqual(manager.get_ai_config("openai").model, "gpt-3.5-turbo")
        queue = manager.queue_settings()
        self.assertEqual((queue.attempts, queue.backoff_delay, queue.max_workers), (3, 5.0, 4))
        self.assertFalse(manager.tm_settings().fuzzy_enabled)

    def test_file_sections_merge_over_defaults(self):
        manager = self._manager({
            "queue": {"attempts": 5},
            "tm": {"fuzzy_enabled": True, "fuzzy_threshold": 80},
            "ai_configs": {"local": {"provider": "ollama", "base_url": "http://localhost:11434/v1", "model": "llama3"}},
        })

        self.assertEqual(manager.queue_settings().attempts, 5)
        self.assertEqual(manager.queue_settings().max_workers, 4)
        self.assertEqual(manager.tm_settings().fuzzy_threshold, 80)
        self.assertEqual(manager.get_ai_config("local").provider, "ollama")
        self.assertEqual(manager.get_ai_config("deepseek").model, "deepseek-chat")

    def test_tm_section_configures_the_store(self):
        from pipeline.tm_store import TranslationMemoryStore

        manager = self._manager({"tm": {"fuzzy_enabled": True, "fuzzy_threshold": 90, "db_path": ":memory:"}})
        store = TranslationMemoryStore.from_settings(manager.tm_settings())
        try:
            self.assertTrue(store.fuzzy_enabled)
            self.assertEqual(store.fuzzy_threshold, 90)
            store.add_entry("Print the report", "Bericht drucken", "en", "de")
            self.assertEqual(len(store.find_matches("Print the reports", "en", "de")), 1)
        finally:
            store.close()

    def test_tm_threshold_out_of_range_is_rejected(self):
        from pipeline.errors import ValidationError

        with self.assertRaises(ValidationError):
            self._manager({"tm": {"fuzzy_threshold": 150}}).tm_settings()

    def test_malformed_config_is_a_validation_error(self):
        from pipeline.errors import ValidationError

        with open(self.config_file, "w", encoding="utf-8") as f:
            f.write("{not json")
        with self.assertRaises(ValidationError):
            self._manager()

    def test_invalid_queue_settings(self):
        from pipeline.errors import ValidationError

        manager = self._manager({"queue": {"attempts": 0}})
        with self.assertRaises(ValidationError):
            manager.queue_settings()

    def test_unknown_ids_are_not_found(self):
        from pipeline.errors import NotFoundError

        manager = self._manager()
        with self.assertRaises(NotFoundError):
            manager.get_ai_config("nope")
        with self.assertRaises(NotFoundError):
            manager.get_prompt_template("nope")

    def test_prompt_template(self):
        manager = self._manager({"prompt_templates": {
            "legal": {"system": "You translate contracts.", "user": "{{input}}", "domain": "legal"},
        }})

        template = manager.get_prompt_template("legal")
        self.assertEqual(template.system_instruction, "You translate contracts.")
        self.assertEqual(template.domain, "legal")
        self.assertEqual(template.task_type, "translation")

    def test_set_ai_config_persists(self):
        from pipeline.settings import AIConfig

        manager = self._manager()
        manager.set_ai_config(AIConfig(config_id="gemini", provider="gemini", model="gemini-1.5-flash",
                                       base_url="https://generativelanguage.googleapis.com/v1beta/openai/"))

        reloaded = self._manager()
        self.assertEqual(reloaded.get_ai_config("gemini").model, "gemini-1.5-flash")

    def test_create_client_uses_stored_key(self):
        with patch("llm.client.OpenAI") as mock_openai:
            manager = self._manager()
            manager.set_api_key("deepseek", "sk-deep")

            client = manager.create_client("deepseek")

            self.assertEqual(client.model, "deepseek-chat")
            self.assertEqual(client.provider, "deepseek")
            mock_openai.assert_called_once_with(api_key="sk-deep", base_url="https://api.deepseek.com/v1", timeout=60.0)


if __name__ == "__main__":
    unittest.main()
