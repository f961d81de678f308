"""Client registry: endpoint + model + credential -> adapter, limits and auth.

The registry serves lookups from an immutable `RegistrySnapshot` built once
at startup. Credential rotation or reconfiguration builds a new snapshot and
swaps it in with `ClientRegistry.replace`; sessions already holding a
`ResolvedClient` keep the one they resolved.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Protocol

import dotenv

from .config import EndpointConfig, Settings, load_endpoints
from .errors import ConfigurationError
from .providers import OpenAICompatibleAdapter, ProviderAdapter, create_adapter
from .tokens import limits_for
from .types import AuthContext, ModelLimits

LOGGER = logging.getLogger(__name__)

# Providers usable without a configured secret: boto3 default chain, keyless local servers
AMBIENT_CREDENTIAL_PROVIDERS = frozenset({"bedrock", "openai_compatible"})


class CredentialProvider(Protocol):
    def resolve(self, reference: str) -> Optional[str]:
        ...


class EnvCredentialProvider:
    """
    Resolves credential references as environment variable names.

    The process environment wins; a `.env` file is consulted as a fallback.
    """

    def __init__(self, dotenv_path: Optional[str] = ".env") -> None:
        self.dotenv_path = dotenv_path

    def resolve(self, reference: str) -> Optional[str]:
        value = os.environ.get(reference)
        if not value and self.dotenv_path and os.path.exists(self.dotenv_path):
            value = dotenv.get_key(self.dotenv_path, reference)
        return value or None


class StaticCredentialProvider:
    """Credentials from an in-memory mapping (tests, secret managers)."""

    def __init__(self, secrets: Mapping[str, str]) -> None:
        self._secrets = dict(secrets)

    def resolve(self, reference: str) -> Optional[str]:
        return self._secrets.get(reference)


@dataclass(frozen=True)
class ResolvedClient:
    """Everything a GenerationSession needs to talk to one model."""

    endpoint: str
    provider: str
    model: str
    adapter: ProviderAdapter
    model_limits: ModelLimits
    auth_context: AuthContext = field(repr=False)


@dataclass(frozen=True)
class RegistrySnapshot:
    endpoints: Mapping[str, EndpointConfig]
    adapters: Mapping[str, ProviderAdapter]
    credentials: CredentialProvider

    @classmethod
    def build(
        cls,
        endpoints: Mapping[str, EndpointConfig],
        credentials: Optional[CredentialProvider] = None,
        adapters: Optional[Mapping[str, ProviderAdapter]] = None,
    ) -> "RegistrySnapshot":
        """
        Freeze an endpoint map, creating one adapter per endpoint.

        Args:
            endpoints: Parsed endpoint configuration.
            credentials: Secret lookup; defaults to EnvCredentialProvider.
            adapters: Pre-built adapters by endpoint name (tests, custom clients).
        """
        built: Dict[str, ProviderAdapter] = dict(adapters or {})
        for name, config in endpoints.items():
            if name in built:
                continue
            if config.provider == OpenAICompatibleAdapter.kind:
                built[name] = OpenAICompatibleAdapter(default_base_url=config.base_url)
            else:
                built[name] = create_adapter(config.provider)
        return cls(
            endpoints=MappingProxyType(dict(endpoints)),
            adapters=MappingProxyType(built),
            credentials=credentials or EnvCredentialProvider(),
        )


class ClientRegistry:
    """
    Resolves which adapter, limits and credentials serve a request.

    Example:
        registry = ClientRegistry.from_settings(Settings.from_env())
        client = registry.resolve("anthropic", "claude-sonnet-4-20250514")
    """

    def __init__(self, snapshot: RegistrySnapshot):
        self._snapshot = snapshot
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        credentials: Optional[CredentialProvider] = None,
    ) -> "ClientRegistry":
        settings = settings or Settings.from_env()
        return cls(RegistrySnapshot.build(load_endpoints(settings), credentials))

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def replace(self, snapshot: RegistrySnapshot) -> RegistrySnapshot:
        """
        Atomically install a new snapshot and return the previous one.

        Callers own closing the previous snapshot's adapters once no session uses them.
        """
        with self._lock:
            previous, self._snapshot = self._snapshot, snapshot
        LOGGER.info("Client registry replaced: %d endpoint(s)", len(snapshot.endpoints))
        return previous

    def endpoints(self) -> List[str]:
        return sorted(self._snapshot.endpoints)

    def resolve(
        self,
        endpoint: str,
        model: Optional[str] = None,
        credential: Optional[str] = None,
    ) -> ResolvedClient:
        """
        Look up the client for one endpoint/model/credential selection.

        Args:
            endpoint (str): Endpoint name from the configuration.
            model (str, optional): Model id; defaults to the endpoint's default model.
            credential (str, optional): Credential reference overriding the endpoint's.

        Returns:
            ResolvedClient: Adapter, model limits and auth context.

        Raises:
            ConfigurationError: If the endpoint or model is unknown or the
                credential is absent.
        """
        snapshot = self._snapshot
        config = snapshot.endpoints.get(endpoint)
        if config is None:
            raise ConfigurationError(
                f"Unknown endpoint '{endpoint}'. Configured: {', '.join(sorted(snapshot.endpoints)) or 'none'}"
            )

        model = model or config.default_model
        if not model:
            raise ConfigurationError(f"Endpoint '{endpoint}' has no default model; pass one explicitly")
        if config.models and model not in config.models:
            raise ConfigurationError(
                f"Unknown model '{model}' for endpoint '{endpoint}'. "
                f"Configured: {', '.join(sorted(config.models))}"
            )

        reference = credential or config.credential
        secret = snapshot.credentials.resolve(reference) if reference else None
        if secret is None and (reference or config.provider not in AMBIENT_CREDENTIAL_PROVIDERS):
            raise ConfigurationError(
                f"Credential {reference or '(none configured)'} for endpoint '{endpoint}' is absent"
            )

        return ResolvedClient(
            endpoint=endpoint,
            provider=config.provider,
            model=model,
            adapter=snapshot.adapters[endpoint],
            model_limits=config.models.get(model) or limits_for(model),
            auth_context=AuthContext(
                api_key=secret,
                base_url=config.base_url,
                region=config.region,
                extra=MappingProxyType(dict(config.extra)),
            ),
        )

    async def list_models(self, endpoint: str) -> List[str]:
        """
        Models the provider behind `endpoint` reports, or the configured ones.
        """
        config = self._snapshot.endpoints.get(endpoint)
        if config is None:
            raise ConfigurationError(f"Unknown endpoint '{endpoint}'")
        if config.models:
            return sorted(config.models)
        client = self.resolve(endpoint, model=config.default_model or "_")
        return await client.adapter.list_models(client.auth_context)

    async def aclose(self) -> None:
        for adapter in self._snapshot.adapters.values():
            await adapter.aclose()


__all__ = [
    "ClientRegistry",
    "CredentialProvider",
    "EnvCredentialProvider",
    "RegistrySnapshot",
    "ResolvedClient",
    "StaticCredentialProvider",
]
