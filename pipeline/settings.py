import os
import json
import base64
from dataclasses import dataclass
from typing import Dict, Optional, Any

import keyring
from keyring.errors import KeyringError

from llm.client import LLMClient
from .errors import NotFoundError, ValidationError
from .logger import get_logger
from .prompt_builder import PromptTemplate

logger = get_logger(__name__)

APP_NAME = "XLIFF_Pipeline"
CONFIG_FILE = os.environ.get("XLIFF_PIPELINE_CONFIG", "config.json")
FALLBACK_KEY_FILE = os.environ.get("XLIFF_PIPELINE_SECRETS", "secrets.json")

DEFAULT_CONFIG: Dict[str, Any] = {
    "ai_configs": {
        "openai": {
            "provider": "openai",
            "base_url": "https://api.openai.com/v1",
            "model": "gpt-3.5-turbo",
            "temperature": 0.3,
            "timeout": 60,
        },
        "deepseek": {
            "provider": "deepseek",
            "base_url": "https://api.deepseek.com/v1",
            "model": "deepseek-chat",
            "temperature": 0.3,
            "timeout": 60,
        },
    },
    "prompt_templates": {},
    "tm": {"fuzzy_enabled": False, "fuzzy_threshold": 75, "db_path": None},
    "queue": {"attempts": 3, "backoff_delay": 5.0, "max_workers": 4},
}


@dataclass
class AIConfig:
    config_id: str
    provider: str
    model: str
    base_url: Optional[str] = None
    temperature: float = 0.3
    timeout: float = 60.0


@dataclass
class TMSettings:
    fuzzy_enabled: bool = False
    fuzzy_threshold: int = 75
    db_path: Optional[str] = None


@dataclass
class QueueSettings:
    attempts: int = 3
    backoff_delay: float = 5.0
    max_workers: int = 4


class KeyringManager:
    """
    Manages secure storage of API Keys using system keyring.
    Falls back to a local obfuscated file if keyring is unavailable.
    """

    def __init__(self, fallback_file: str = FALLBACK_KEY_FILE):
        self.fallback_file = fallback_file
        self.use_fallback = False
        try:
            # Headless workers often have no keyring backend at all
            keyring.get_password(f"{APP_NAME}_availability", "check")
        except KeyringError as e:
            logger.warning(f"System keyring not available: {e}. Using local fallback.")
            self.use_fallback = True

    def set_secret(self, service: str, key: str, value: str):
        if not value:
            return

        if self.use_fallback:
            self._save_fallback(service, key, value)
            return
        try:
            keyring.set_password(f"{APP_NAME}_{service}", key, value)
        except KeyringError as e:
            logger.error(f"Failed to save to keyring: {e}. Switching to fallback.")
            self.use_fallback = True
            self._save_fallback(service, key, value)

    def get_secret(self, service: str, key: str) -> Optional[str]:
        if self.use_fallback:
            return self._load_fallback(service, key)
        try:
            return keyring.get_password(f"{APP_NAME}_{service}", key)
        except KeyringError as e:
            logger.warning(f"Keyring read failed ({e}); trying fallback file")
            return self._load_fallback(service, key)

    def _save_fallback(self, service: str, key: str, value: str):
        """
        Simple obfuscation (NOT ENCRYPTION) for fallback.
        Better than plain text, but not secure against determined attackers.
        """
        data = self._read_fallback_file()
        data.setdefault(service, {})
        data[service][key] = base64.b64encode(value.encode("utf-8")).decode("utf-8")

        with open(self.fallback_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def _load_fallback(self, service: str, key: str) -> Optional[str]:
        encoded = self._read_fallback_file().get(service, {}).get(key)
        if not encoded:
            return None
        return base64.b64decode(encoded).decode("utf-8")

    def _read_fallback_file(self) -> Dict:
        if not os.path.exists(self.fallback_file):
            return {}
        with open(self.fallback_file, "r", encoding="utf-8") as f:
            return json.load(f)


class SettingsManager:
    """
    Pipeline configuration: AI configurations, prompt templates, TM and queue
    settings from JSON; API keys from the keyring.
    """

    def __init__(self, config_file: str = CONFIG_FILE, keyring_manager: Optional[KeyringManager] = None):
        self.config_file = config_file
        self.keyring = keyring_manager or KeyringManager()
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        config = json.loads(json.dumps(DEFAULT_CONFIG))
        if not os.path.exists(self.config_file):
            return config
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Malformed config file {self.config_file}: {e}") from e
        if not isinstance(loaded, dict):
            raise ValidationError(f"Config file {self.config_file} must hold a JSON object")

        for section, value in loaded.items():
            if isinstance(value, dict) and isinstance(config.get(section), dict):
                config[section].update(value)
            else:
                config[section] = value
        return config

    def save_config(self):
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self.config, f, indent=2)

    def get_api_key(self, config_id: str) -> Optional[str]:
        return self.keyring.get_secret("ai_configs", config_id)

    def set_api_key(self, config_id: str, key: str):
        self.keyring.set_secret("ai_configs", config_id, key)

    def get_ai_config(self, config_id: str) -> AIConfig:
        raw = self.config.get("ai_configs", {}).get(config_id)
        if raw is None:
            raise NotFoundError(f"AI configuration '{config_id}' not found")
        return AIConfig(
            config_id=config_id,
            provider=raw.get("provider", config_id),
            model=raw.get("model", "gpt-3.5-turbo"),
            base_url=raw.get("base_url"),
            temperature=float(raw.get("temperature", 0.3)),
            timeout=float(raw.get("timeout", 60)),
        )

    def set_ai_config(self, config: AIConfig):
        self.config.setdefault("ai_configs", {})[config.config_id] = {
            "provider": config.provider,
            "base_url": config.base_url,
            "model": config.model,
            "temperature": config.temperature,
            "timeout": config.timeout,
        }
        self.save_config()

    def create_client(self, config_id: str) -> LLMClient:
        """Builds the AI capability for an AI configuration id."""
        config = self.get_ai_config(config_id)
        return LLMClient(
            api_key=self.get_api_key(config_id),
            base_url=config.base_url,
            model=config.model,
            provider=config.provider,
            timeout=config.timeout,
            temperature=config.temperature,
        )

    def get_prompt_template(self, template_id: str) -> PromptTemplate:
        raw = self.config.get("prompt_templates", {}).get(template_id)
        if raw is None:
            raise NotFoundError(f"Prompt template '{template_id}' not found")
        return PromptTemplate(
            template_id=template_id,
            system_instruction=raw.get("system", PromptTemplate.system_instruction),
            user_prompt=raw.get("user", PromptTemplate.user_prompt),
            task_type=raw.get("task_type", "translation"),
            domain=raw.get("domain", ""),
        )

    def tm_settings(self) -> TMSettings:
        raw = self.config.get("tm", {})
        settings = TMSettings(
            fuzzy_enabled=bool(raw.get("fuzzy_enabled", False)),
            fuzzy_threshold=int(raw.get("fuzzy_threshold", 75)),
            db_path=raw.get("db_path"),
        )
        if not 0 <= settings.fuzzy_threshold <= 100:
            raise ValidationError("TM fuzzy_threshold must be between 0 and 100")
        return settings

    def queue_settings(self) -> QueueSettings:
        raw = self.config.get("queue", {})
        settings = QueueSettings(
            attempts=int(raw.get("attempts", 3)),
            backoff_delay=float(raw.get("backoff_delay", 5.0)),
            max_workers=int(raw.get("max_workers", 4)),
        )
        if settings.attempts < 1 or settings.max_workers < 1 or settings.backoff_delay < 0:
            raise ValidationError("Queue settings must have attempts >= 1, max_workers >= 1, backoff_delay >= 0")
        return settings
