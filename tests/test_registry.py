import json
import pytest
from unittest.mock import AsyncMock

from llmrelay.config import Settings, default_endpoints, load_endpoints, parse_endpoints
from llmrelay.errors import ConfigurationError
from llmrelay.providers import AnthropicAdapter, OpenAICompatibleAdapter
from llmrelay.registry import (
    ClientRegistry, EnvCredentialProvider, RegistrySnapshot, StaticCredentialProvider,
)
from llmrelay.types import ModelLimits

ENDPOINTS = {
    "claude": {
        "provider": "anthropic",
        "credential": "ANTHROPIC_API_KEY",
        "models": {
            "claude-sonnet-4-20250514": {"context_window": 200000, "max_output": 64000},
            "claude-3-5-haiku-20241022": {"context_window": 200000, "max_output": 8192},
        },
        "default_model": "claude-3-5-haiku-20241022",
    },
    "local": {
        "provider": "compatible",
        "credential": None,
        "base_url": "http://localhost:11434/v1",
        "models": {"llama3.1": {"context_window": 131072, "max_output": 4096}},
        "extra": {"include_usage": True},
    },
    "aws": {"provider": "bedrock", "region": "eu-west-1"},
}


@pytest.fixture
def registry():
    return ClientRegistry(RegistrySnapshot.build(
        parse_endpoints(ENDPOINTS),
        StaticCredentialProvider({"ANTHROPIC_API_KEY": "sk-ant", "ALT_KEY": "sk-alt"}),
    ))


class TestParseEndpoints:
    def test_valid_map(self):
        endpoints = parse_endpoints(ENDPOINTS)

        assert endpoints["claude"].models["claude-sonnet-4-20250514"] == ModelLimits(200000, 64000)
        assert endpoints["local"].provider == "openai_compatible"
        # A single configured model becomes the default
        assert endpoints["local"].default_model == "llama3.1"
        assert endpoints["aws"].models == {}

    @pytest.mark.parametrize("spec, message", [
        ({"credential": "X"}, "must include 'provider'"),
        ({"provider": "openai", "models": []}, "'models' must be an object"),
        ({"provider": "openai", "models": {"m": {"context_window": 100}}}, "needs integer"),
        ({"provider": "openai", "models": {"m": {"context_window": 100, "max_output": 100}}}, "max_output <"),
        ({"provider": "openai", "default_model": "x", "models": {"m": {"context_window": 9, "max_output": 1}}},
         "not in 'models'"),
        ({"provider": "openai_compatible"}, "need 'base_url'"),
        ({"provider": "bedrock"}, "need 'region'"),
        ({"provider": "openai", "extra": "nope"}, "'extra' must be an object"),
    ])
    def test_invalid_entries(self, spec, message):
        with pytest.raises(ConfigurationError, match=message):
            parse_endpoints({"bad": spec})

    def test_unknown_provider_fails_at_snapshot(self):
        with pytest.raises(ConfigurationError, match="Unknown provider"):
            RegistrySnapshot.build(parse_endpoints({"x": {"provider": "mystery"}}))


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings == Settings()

    def test_values_from_env(self):
        settings = Settings.from_env({
            "LLMRELAY_MAX_ATTEMPTS": "5",
            "LLMRELAY_RETRY_MAX_SECONDS": "2.5",
            "LLMRELAY_CANCEL_POLICY": "DISCARD",
            "LLMRELAY_LOG_LEVEL": "debug",
            "LLMRELAY_ENDPOINTS_FILE": " endpoints.json ",
        })
        assert settings.max_attempts == 5
        assert settings.retry_max_seconds == 2.5
        assert settings.cancel_policy == "discard"
        assert settings.log_level == "DEBUG"
        assert settings.endpoints_file == "endpoints.json"

    @pytest.mark.parametrize("env", [
        {"LLMRELAY_MAX_ATTEMPTS": "three"},
        {"LLMRELAY_MAX_ATTEMPTS": "0"},
        {"LLMRELAY_IDLE_TIMEOUT_SECONDS": "-1"},
        {"LLMRELAY_CANCEL_POLICY": "keep"},
    ])
    def test_invalid_values(self, env):
        with pytest.raises(ConfigurationError):
            Settings.from_env(env)


class TestLoadEndpoints:
    def test_inline_json(self):
        endpoints = load_endpoints(Settings(endpoints_json=json.dumps(ENDPOINTS)))
        assert sorted(endpoints) == ["aws", "claude", "local"]

    def test_file(self, tmp_path):
        path = tmp_path / "endpoints.json"
        path.write_text(json.dumps({"o": {"provider": "openai", "credential": "OPENAI_API_KEY"}}))
        endpoints = load_endpoints(Settings(endpoints_file=str(path)))
        assert endpoints["o"].credential == "OPENAI_API_KEY"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_endpoints(Settings(endpoints_file=str(tmp_path / "nope.json")))

    def test_bad_json(self):
        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            load_endpoints(Settings(endpoints_json="{not json"))

    def test_defaults_without_config(self):
        endpoints = load_endpoints(Settings())
        assert set(endpoints) == set(default_endpoints())
        assert default_endpoints({"AWS_REGION": "ap-south-1"})["bedrock"].region == "ap-south-1"


class TestClientRegistry:
    def test_resolve_default_model(self, registry):
        client = registry.resolve("claude")

        assert client.model == "claude-3-5-haiku-20241022"
        assert client.model_limits == ModelLimits(200000, 8192)
        assert isinstance(client.adapter, AnthropicAdapter)
        assert client.auth_context.api_key == "sk-ant"
        assert "sk-ant" not in repr(client)

    def test_credential_override(self, registry):
        client = registry.resolve("claude", "claude-sonnet-4-20250514", credential="ALT_KEY")
        assert client.auth_context.api_key == "sk-alt"

    def test_unknown_endpoint(self, registry):
        with pytest.raises(ConfigurationError, match="Unknown endpoint 'nope'"):
            registry.resolve("nope")

    def test_unknown_model(self, registry):
        with pytest.raises(ConfigurationError, match="Unknown model 'gpt-4o'"):
            registry.resolve("claude", "gpt-4o")

    def test_missing_credential(self, registry):
        with pytest.raises(ConfigurationError, match="MISSING_KEY"):
            registry.resolve("claude", credential="MISSING_KEY")

    def test_ambient_credentials(self, registry):
        local = registry.resolve("local")
        assert local.auth_context.api_key is None
        assert local.auth_context.extra["include_usage"] is True
        assert isinstance(local.adapter, OpenAICompatibleAdapter)
        assert local.adapter.default_base_url == "http://localhost:11434/v1"

        aws = registry.resolve("aws", "us.anthropic.claude-3-5-haiku-20241022-v1:0")
        assert aws.auth_context.region == "eu-west-1"
        assert aws.model_limits == ModelLimits(200_000, 8_192)

    def test_bedrock_needs_model(self, registry):
        with pytest.raises(ConfigurationError, match="no default model"):
            registry.resolve("aws")

    def test_replace_swaps_snapshot(self, registry):
        old = registry.snapshot
        new = RegistrySnapshot.build(
            parse_endpoints({"o": {"provider": "openai", "credential": "K", "default_model": "gpt-4o"}}),
            StaticCredentialProvider({"K": "sk-new"}),
        )
        held = registry.resolve("claude")

        assert registry.replace(new) is old
        assert registry.endpoints() == ["o"]
        assert registry.resolve("o").auth_context.api_key == "sk-new"
        assert held.auth_context.api_key == "sk-ant"
        with pytest.raises(ConfigurationError):
            registry.resolve("claude")

    @pytest.mark.asyncio
    async def test_list_models(self, registry):
        assert await registry.list_models("claude") == ["claude-3-5-haiku-20241022", "claude-sonnet-4-20250514"]

        adapter = registry.snapshot.adapters["aws"]
        adapter.list_models = AsyncMock(return_value=["amazon.nova-pro-v1:0"])
        assert await registry.list_models("aws") == ["amazon.nova-pro-v1:0"]


class TestEnvCredentialProvider:
    def test_env_then_dotenv(self, mock_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("ONLY_IN_FILE=from-file\nOPENAI_API_KEY=stale\n")
        provider = EnvCredentialProvider(dotenv_path=str(env_file))

        assert provider.resolve("OPENAI_API_KEY") == "sk-test-openai"
        assert provider.resolve("ONLY_IN_FILE") == "from-file"
        assert provider.resolve("NOT_ANYWHERE") is None
