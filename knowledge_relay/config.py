"""Configuration loader for the knowledge relay.

Reads an optional JSON config file, applies defaults, then lets environment
variables override individual settings. Secrets are normally supplied through
the environment rather than the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


@dataclass
class ServerConfig:
    """HTTP server settings."""

    port: int = 8080
    mode: str = "release"
    allow_domains: List[str] = field(default_factory=list)


@dataclass
class AIConfig:
    """OpenAI-compatible chat completion backend."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    max_tokens: int = 2000
    temperature: float = 0.7
    timeout: float = 60.0


@dataclass
class KnowledgeConfig:
    """External knowledge retrieval endpoint."""

    base_url: str = ""
    token: str = ""
    top_k: int = 3
    timeout: float = 30.0


@dataclass
class RAGConfig:
    """Prompt settings for retrieval-augmented generation."""

    system_prompt: str = (
        "You are a helpful assistant. Answer the user's question using the "
        "reference material when it is relevant."
    )


@dataclass
class LogConfig:
    """Log destination and rotation."""

    dir: str = "logs"
    level: str = "info"
    max_size_mb: int = 100
    max_backups: int = 5


@dataclass
class CaptchaConfig:
    """Verification challenge selection and per-provider credentials.

    An empty ``type`` disables verification entirely.
    """

    type: str = ""
    # Tencent Cloud captcha
    secret_id: str = ""
    secret_key: str = ""
    captcha_app_id: int = 0
    app_secret_key: str = ""
    endpoint: str = "captcha.tencentcloudapi.com"
    captcha_type: int = 9  # slider
    # Geetest v4
    geetest_id: str = ""
    geetest_key: str = ""
    geetest_url: str = "http://gcaptcha4.geetest.com/validate"
    # Google reCAPTCHA v2/v3
    recaptcha_secret_key: str = ""
    recaptcha_min_score: float = 0.5
    recaptcha_url: str = "https://www.google.com/recaptcha/api/siteverify"
    # Cloudflare Turnstile
    turnstile_site_key: str = ""
    turnstile_secret_key: str = ""
    turnstile_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
    # Aliyun captcha 2.0
    aliyun_access_key_id: str = ""
    aliyun_access_key_secret: str = ""
    aliyun_captcha_app_id: str = ""
    aliyun_endpoint: str = "captcha.cn-shanghai.aliyuncs.com"


@dataclass
class RelayConfig:
    """Top-level relay configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    rag: RAGConfig = field(default_factory=RAGConfig)
    log: LogConfig = field(default_factory=LogConfig)
    captcha: CaptchaConfig = field(default_factory=CaptchaConfig)


# Environment variable -> (section, attribute)
_ENV_OVERRIDES = {
    "SERVER_PORT": ("server", "port"),
    "SERVER_MODE": ("server", "mode"),
    "AI_BASE_URL": ("ai", "base_url"),
    "AI_API_KEY": ("ai", "api_key"),
    "AI_MODEL": ("ai", "model"),
    "KNOWLEDGE_BASE_URL": ("knowledge", "base_url"),
    "KNOWLEDGE_TOKEN": ("knowledge", "token"),
    "KNOWLEDGE_TOP_K": ("knowledge", "top_k"),
    "RAG_SYSTEM_PROMPT": ("rag", "system_prompt"),
    "LOG_DIR": ("log", "dir"),
    "LOG_LEVEL": ("log", "level"),
    "CAPTCHA_TYPE": ("captcha", "type"),
    "TENCENTCLOUD_SECRET_ID": ("captcha", "secret_id"),
    "TENCENTCLOUD_SECRET_KEY": ("captcha", "secret_key"),
    "CAPTCHA_APP_ID": ("captcha", "captcha_app_id"),
    "CAPTCHA_APP_SECRET_KEY": ("captcha", "app_secret_key"),
    "CAPTCHA_ENDPOINT": ("captcha", "endpoint"),
    "TENCENT_CAPTCHA_TYPE": ("captcha", "captcha_type"),
    "GEETEST_ID": ("captcha", "geetest_id"),
    "GEETEST_KEY": ("captcha", "geetest_key"),
    "GEETEST_URL": ("captcha", "geetest_url"),
    "RECAPTCHA_SECRET_KEY": ("captcha", "recaptcha_secret_key"),
    "RECAPTCHA_MIN_SCORE": ("captcha", "recaptcha_min_score"),
    "TURNSTILE_SITE_KEY": ("captcha", "turnstile_site_key"),
    "TURNSTILE_SECRET_KEY": ("captcha", "turnstile_secret_key"),
    "TURNSTILE_URL": ("captcha", "turnstile_url"),
    "ALIYUN_ACCESS_KEY_ID": ("captcha", "aliyun_access_key_id"),
    "ALIYUN_ACCESS_KEY_SECRET": ("captcha", "aliyun_access_key_secret"),
    "ALIYUN_CAPTCHA_APP_ID": ("captcha", "aliyun_captcha_app_id"),
    "ALIYUN_CAPTCHA_ENDPOINT": ("captcha", "aliyun_endpoint"),
}


def load_config(path: Optional[Union[str, Path]] = None) -> RelayConfig:
    """Load relay configuration from an optional JSON file and the environment.

    Args:
        path: Path to the JSON config file, or None to use defaults only.

    Returns:
        A fully resolved RelayConfig instance.

    Raises:
        FileNotFoundError: If a path is given but the file does not exist.
        ValueError: If the config file contains invalid data.
    """
    config = RelayConfig()

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                raw: Dict[str, Any] = json.load(f)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON in config file {path}: {exc}") from exc

        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")

        for section_name, section_raw in raw.items():
            section = getattr(config, section_name, None)
            if section is None or not isinstance(section_raw, dict):
                raise ValueError(f"Unknown or malformed config section: {section_name}")
            for key, value in section_raw.items():
                if not hasattr(section, key):
                    raise ValueError(f"Unknown config key: {section_name}.{key}")
                setattr(section, key, _coerce(getattr(section, key), value, section_name, key))

    _override_with_env(config)
    return config


def _override_with_env(config: RelayConfig) -> None:
    """Apply environment variable overrides in place."""
    for env_name, (section_name, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        section = getattr(config, section_name)
        try:
            setattr(section, key, _coerce(getattr(section, key), value, section_name, key))
        except ValueError:
            # Unparsable numeric overrides keep the configured value
            continue

    allow_domains = os.getenv("ALLOW_DOMAINS")
    if allow_domains:
        config.server.allow_domains = [
            d.strip() for d in allow_domains.split(",") if d.strip()
        ]
    legacy_domain = os.getenv("ALLOW_DOMAIN")
    if legacy_domain and not config.server.allow_domains:
        config.server.allow_domains = [legacy_domain.strip()]


def _coerce(current: Any, value: Any, section: str, key: str) -> Any:
    """Convert a raw value to the type of the field's current value."""
    try:
        if value is None or isinstance(value, dict):
            raise TypeError("expected a scalar")
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, list):
            if isinstance(value, str):
                return [v.strip() for v in value.split(",") if v.strip()]
            if not isinstance(value, list):
                raise TypeError("expected a list")
            return [str(v) for v in value]
        if isinstance(value, list):
            raise TypeError("expected a scalar")
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for {section}.{key}: {value!r}") from exc
