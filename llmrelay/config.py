"""Process-wide configuration: runtime settings and the endpoint map.

Settings come from ``LLMRELAY_*`` environment variables, with a ``.env``
file loaded first (existing environment variables win).

The endpoint map is JSON, given inline via ``LLMRELAY_ENDPOINTS_JSON`` or as
a file path via ``LLMRELAY_ENDPOINTS_FILE``::

    {
      "openai": {"provider": "openai", "credential": "OPENAI_API_KEY",
                 "default_model": "gpt-4o-mini"},
      "local": {"provider": "openai_compatible", "credential": null,
                "base_url": "http://localhost:11434/v1", "default_model": "llama3.1",
                "models": {"llama3.1": {"context_window": 131072, "max_output": 4096}}}
    }

Without either variable, `default_endpoints` provides one endpoint per
provider using the conventional API key variable names.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import dotenv

from .errors import ConfigurationError
from .providers import normalize_provider
from .types import ModelLimits

ENV_PREFIX = "LLMRELAY_"


@dataclass(frozen=True)
class EndpointConfig:
    """
    One named endpoint: provider variant, credential reference and models.

    `credential` names the environment variable holding the secret, never the
    secret itself. An empty `models` mapping accepts any model id and takes
    limits from the built-in table.
    """
    name: str
    provider: str
    credential: Optional[str] = None
    base_url: Optional[str] = None
    region: Optional[str] = None
    default_model: Optional[str] = None
    models: Mapping[str, ModelLimits] = field(default_factory=dict)
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Settings:
    max_attempts: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 8.0
    retry_jitter_seconds: float = 0.5
    idle_timeout_seconds: float = 60.0
    tool_timeout_seconds: float = 30.0
    max_tool_round_trips: int = 8
    cancel_policy: str = "persist"
    event_buffer: int = 32
    log_level: str = "INFO"
    endpoints_json: Optional[str] = None
    endpoints_file: Optional[str] = None

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        *,
        dotenv_path: Optional[str] = ".env",
    ) -> "Settings":
        """
        Read settings from the environment.

        Args:
            env (Mapping, optional): Variables to read instead of `os.environ`.
                When given, no `.env` file is loaded.
            dotenv_path (str, optional): `.env` file to load before reading.

        Raises:
            ConfigurationError: If a variable holds an invalid value.
        """
        if env is None:
            if dotenv_path:
                dotenv.load_dotenv(dotenv_path, override=False)
            env = os.environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        defaults = cls()
        cancel_policy = (get("CANCEL_POLICY") or defaults.cancel_policy).lower()
        if cancel_policy not in ("persist", "discard"):
            raise ConfigurationError(
                f"{ENV_PREFIX}CANCEL_POLICY must be 'persist' or 'discard', got '{cancel_policy}'"
            )

        return cls(
            max_attempts=_number(get, "MAX_ATTEMPTS", int, defaults.max_attempts, minimum=1),
            retry_min_seconds=_number(get, "RETRY_MIN_SECONDS", float, defaults.retry_min_seconds),
            retry_max_seconds=_number(get, "RETRY_MAX_SECONDS", float, defaults.retry_max_seconds),
            retry_jitter_seconds=_number(get, "RETRY_JITTER_SECONDS", float, defaults.retry_jitter_seconds),
            idle_timeout_seconds=_number(get, "IDLE_TIMEOUT_SECONDS", float, defaults.idle_timeout_seconds),
            tool_timeout_seconds=_number(get, "TOOL_TIMEOUT_SECONDS", float, defaults.tool_timeout_seconds),
            max_tool_round_trips=_number(get, "MAX_TOOL_ROUND_TRIPS", int, defaults.max_tool_round_trips),
            cancel_policy=cancel_policy,
            event_buffer=_number(get, "EVENT_BUFFER", int, defaults.event_buffer, minimum=1),
            log_level=(get("LOG_LEVEL") or defaults.log_level).upper(),
            endpoints_json=get("ENDPOINTS_JSON"),
            endpoints_file=get("ENDPOINTS_FILE"),
        )


def _number(get, name: str, cast, default, *, minimum=0):
    raw = get(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got '{raw}'") from None
    if value < minimum:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be >= {minimum}, got {value}")
    return value


def _parse_limits(endpoint: str, model: str, raw: Any) -> ModelLimits:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Endpoint '{endpoint}': limits for model '{model}' must be an object")
    try:
        limits = ModelLimits(
            context_window=int(raw["context_window"]),
            max_output=int(raw["max_output"]),
        )
    except (KeyError, TypeError, ValueError):
        raise ConfigurationError(
            f"Endpoint '{endpoint}': model '{model}' needs integer 'context_window' and 'max_output'"
        ) from None
    if limits.context_window <= 0 or limits.max_output <= 0 or limits.max_output >= limits.context_window:
        raise ConfigurationError(
            f"Endpoint '{endpoint}': model '{model}' needs 0 < max_output < context_window"
        )
    return limits


def parse_endpoints(raw: Mapping[str, Any]) -> Dict[str, EndpointConfig]:
    """
    Validate a decoded endpoint map.

    Args:
        raw (Mapping): Endpoint name -> endpoint object.

    Returns:
        Dict[str, EndpointConfig]: Parsed endpoints, keyed by name.

    Raises:
        ConfigurationError: If an entry is malformed or names an unknown provider.
    """
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Endpoint configuration must be a JSON object")

    endpoints: Dict[str, EndpointConfig] = {}
    for name, spec in raw.items():
        if not isinstance(spec, Mapping):
            raise ConfigurationError(f"Endpoint '{name}' must be an object")
        if not spec.get("provider"):
            raise ConfigurationError(f"Endpoint '{name}' must include 'provider'")
        provider = normalize_provider(str(spec["provider"]))

        models_raw = spec.get("models") or {}
        if not isinstance(models_raw, Mapping):
            raise ConfigurationError(f"Endpoint '{name}': 'models' must be an object")
        models = {str(model): _parse_limits(name, model, limits) for model, limits in models_raw.items()}

        default_model = spec.get("default_model")
        if default_model is None and len(models) == 1:
            default_model = next(iter(models))
        if default_model is not None and models and default_model not in models:
            raise ConfigurationError(f"Endpoint '{name}': default_model '{default_model}' is not in 'models'")

        if provider == "openai_compatible" and not spec.get("base_url"):
            raise ConfigurationError(f"Endpoint '{name}': openai_compatible endpoints need 'base_url'")
        if provider == "bedrock" and not spec.get("region"):
            raise ConfigurationError(f"Endpoint '{name}': bedrock endpoints need 'region'")

        extra = spec.get("extra") or {}
        if not isinstance(extra, Mapping):
            raise ConfigurationError(f"Endpoint '{name}': 'extra' must be an object")

        endpoints[str(name)] = EndpointConfig(
            name=str(name),
            provider=provider,
            credential=spec.get("credential"),
            base_url=spec.get("base_url"),
            region=spec.get("region"),
            default_model=default_model,
            models=models,
            extra=dict(extra),
        )
    return endpoints


def default_endpoints(env: Optional[Mapping[str, str]] = None) -> Dict[str, EndpointConfig]:
    """
    One endpoint per provider, keyed by the conventional API key variables.

    Endpoints are declared whether or not the key is set; resolving one
    without its key fails with ConfigurationError.
    """
    env = os.environ if env is None else env
    return {
        "openai": EndpointConfig("openai", "openai", credential="OPENAI_API_KEY", default_model="gpt-4o-mini"),
        "anthropic": EndpointConfig(
            "anthropic", "anthropic", credential="ANTHROPIC_API_KEY", default_model="claude-sonnet-4-20250514"
        ),
        "gemini": EndpointConfig("gemini", "gemini", credential="GOOGLE_API_KEY", default_model="gemini-2.5-flash"),
        "deepseek": EndpointConfig(
            "deepseek",
            "openai_compatible",
            credential="DEEPSEEK_API_KEY",
            base_url="https://api.deepseek.com",
            default_model="deepseek-chat",
        ),
        "huggingface": EndpointConfig(
            "huggingface",
            "openai_compatible",
            credential="HUGGINGFACE_API_KEY",
            base_url="https://router.huggingface.co/v1",
        ),
        "bedrock": EndpointConfig(
            "bedrock",
            "bedrock",
            region=env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION") or "us-east-1",
            default_model="us.anthropic.claude-3-5-haiku-20241022-v1:0",
        ),
    }


def load_endpoints(settings: Settings) -> Dict[str, EndpointConfig]:
    """
    Load the endpoint map named by `settings`, or the defaults.

    Raises:
        ConfigurationError: If the JSON cannot be read or parsed.
    """
    if settings.endpoints_json:
        source, text = f"{ENV_PREFIX}ENDPOINTS_JSON", settings.endpoints_json
    elif settings.endpoints_file:
        source = settings.endpoints_file
        try:
            text = Path(settings.endpoints_file).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Cannot read endpoint file {source}: {exc}") from exc
    else:
        return default_endpoints()

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {source}: {exc}") from exc
    return parse_endpoints(raw)
