"""
Cosmos DB connection for the event log and snapshot store.

Authenticates with an account key or an Azure AD credential, creates the
two containers on first connect and retries throttled or failed calls.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from azure.core import MatchConditions
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError
from azure.identity.aio import (
    ClientSecretCredential,
    DefaultAzureCredential,
    ManagedIdentityCredential,
)

from ..exceptions import AuthenticationError, StorageConnectionError, StorageIOError
from ..resilience import RetryConfig, retry_with_backoff

logger = logging.getLogger(__name__)

# Container names
EVENTS_CONTAINER = "events"
BEHAVIORS_CONTAINER = "behaviors"

# Both containers are partitioned by channel name
PARTITION_KEY_PATH = "/channel"

DEFAULT_DATABASE = "reducer_sync"
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0  # seconds


class CosmosAuthMethod(Enum):
    """Authentication method for Cosmos DB.

    KEY: Use the account key (development only)
    DEFAULT_CREDENTIAL: Use Azure DefaultAzureCredential (recommended)
    MANAGED_IDENTITY: Use Azure Managed Identity explicitly
    SERVICE_PRINCIPAL: Use Service Principal with client_id/client_secret
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"
    SERVICE_PRINCIPAL = "service_principal"


@dataclass
class CosmosConfig:
    """Configuration for Cosmos DB connection.

    Attributes:
        endpoint: Cosmos DB account endpoint URL
        database_name: Name of the database to use
        auth_method: How to authenticate (default: DEFAULT_CREDENTIAL)
        key: Account key (only for KEY auth)
        events_container: Container holding event log documents
        behaviors_container: Container holding snapshots and reducer records
        azure_tenant_id: Azure tenant ID (for SERVICE_PRINCIPAL)
        azure_client_id: Azure client ID (for SERVICE_PRINCIPAL/MANAGED_IDENTITY)
        azure_client_secret: Azure client secret (for SERVICE_PRINCIPAL)
        max_retries: Maximum retry attempts for transient failures
        retry_delay: Base delay between retries (seconds)
    """

    endpoint: str
    database_name: str = DEFAULT_DATABASE
    auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    key: str | None = None
    events_container: str = EVENTS_CONTAINER
    behaviors_container: str = BEHAVIORS_CONTAINER
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY

    @classmethod
    def from_env(cls) -> CosmosConfig:
        """Create config from environment variables.

        Expected environment variables:
        - REDUCER_SYNC_COSMOS_ENDPOINT: Cosmos DB account endpoint (required)
        - REDUCER_SYNC_COSMOS_KEY: Account key (implies KEY auth if no method is set)
        - REDUCER_SYNC_COSMOS_AUTH_METHOD: key, default_credential, managed_identity
          or service_principal
        - REDUCER_SYNC_COSMOS_DATABASE: Database name (default: reducer_sync)
        - AZURE_TENANT_ID, AZURE_CLIENT_ID, AZURE_CLIENT_SECRET

        Raises:
            AuthenticationError: If the endpoint or required credentials are missing
        """
        endpoint = os.environ.get("REDUCER_SYNC_COSMOS_ENDPOINT")
        if not endpoint:
            raise AuthenticationError(
                "cosmos", "REDUCER_SYNC_COSMOS_ENDPOINT environment variable not set"
            )

        key = os.environ.get("REDUCER_SYNC_COSMOS_KEY")
        method_str = os.environ.get("REDUCER_SYNC_COSMOS_AUTH_METHOD")
        if method_str:
            try:
                auth_method = CosmosAuthMethod(method_str.lower())
            except ValueError:
                raise AuthenticationError(
                    endpoint, f"unknown auth method {method_str!r}"
                ) from None
        else:
            auth_method = CosmosAuthMethod.KEY if key else CosmosAuthMethod.DEFAULT_CREDENTIAL

        if auth_method == CosmosAuthMethod.KEY and not key:
            raise AuthenticationError(endpoint, "REDUCER_SYNC_COSMOS_KEY environment variable not set")

        return cls(
            endpoint=endpoint,
            database_name=os.environ.get("REDUCER_SYNC_COSMOS_DATABASE", DEFAULT_DATABASE),
            auth_method=auth_method,
            key=key,
            azure_tenant_id=os.environ.get("AZURE_TENANT_ID"),
            azure_client_id=os.environ.get("AZURE_CLIENT_ID"),
            azure_client_secret=os.environ.get("AZURE_CLIENT_SECRET"),
        )

    @property
    def retry(self) -> RetryConfig:
        """Backoff policy derived from ``max_retries`` and ``retry_delay``."""
        return RetryConfig(max_retries=self.max_retries, backoff_base=self.retry_delay)


def get_credential(config: CosmosConfig) -> Any:
    """Get the credential object for the configured auth method.

    Raises:
        AuthenticationError: If required settings for the method are missing
    """
    method = config.auth_method

    if method == CosmosAuthMethod.KEY:
        if not config.key:
            raise AuthenticationError(config.endpoint, "key required for KEY authentication")
        return config.key

    if method == CosmosAuthMethod.MANAGED_IDENTITY:
        # Without a client ID this is the system-assigned identity
        if config.azure_client_id:
            return ManagedIdentityCredential(client_id=config.azure_client_id)
        return ManagedIdentityCredential()

    if method == CosmosAuthMethod.SERVICE_PRINCIPAL:
        if not all([config.azure_tenant_id, config.azure_client_id, config.azure_client_secret]):
            raise AuthenticationError(
                config.endpoint,
                "azure_tenant_id, azure_client_id, and azure_client_secret "
                "required for SERVICE_PRINCIPAL authentication",
            )
        return ClientSecretCredential(
            tenant_id=config.azure_tenant_id,
            client_id=config.azure_client_id,
            client_secret=config.azure_client_secret,
        )

    return DefaultAzureCredential()


class CosmosClientWrapper:
    """Async Cosmos DB client bound to the events and behaviors containers.

    Every operation names its container and is retried on throttling and
    server errors. Conflicts (409), failed preconditions (412) and other
    client errors propagate as ``CosmosHttpResponseError`` so the backends
    can arbitrate concurrent writers. Both containers are partitioned by
    channel name.

    Usage:
        >>> async with CosmosClientWrapper(CosmosConfig.from_env()) as client:
        ...     log = CosmosEventLog(client)
    """

    def __init__(self, config: CosmosConfig):
        self.config = config
        self._client: CosmosClient | None = None
        self._credential: Any = None
        self._containers: dict[str, ContainerProxy] = {}

    @property
    def connected(self) -> bool:
        return bool(self._containers)

    async def initialize(self) -> None:
        """Connect and create the database and containers if missing.

        Raises:
            AuthenticationError: The account rejected the credential
            StorageConnectionError: Any other failure to connect
        """
        if self.connected:
            return

        self._credential = get_credential(self.config)
        try:
            self._client = CosmosClient(self.config.endpoint, credential=self._credential)
            database = await self._client.create_database_if_not_exists(
                id=self.config.database_name
            )
            containers = {}
            for name in (self.config.events_container, self.config.behaviors_container):
                containers[name] = await database.create_container_if_not_exists(
                    id=name, partition_key=PartitionKey(path=PARTITION_KEY_PATH)
                )
        except CosmosHttpResponseError as e:
            await self.close()
            if e.status_code in (401, 403):
                raise AuthenticationError(self.config.endpoint, str(e)) from e
            raise StorageConnectionError(self.config.endpoint, e) from e
        except Exception as e:
            await self.close()
            raise StorageConnectionError(self.config.endpoint, e) from e

        self._containers = containers
        logger.info(
            f"Connected to {self.config.endpoint} database={self.config.database_name} "
            f"auth={self.config.auth_method.value}"
        )

    async def close(self) -> None:
        """Release the client and any Azure AD credential."""
        client, credential = self._client, self._credential
        self._client = None
        self._credential = None
        self._containers = {}
        if client is not None:
            await client.close()
        if credential is not None and hasattr(credential, "close"):
            await credential.close()

    async def __aenter__(self) -> CosmosClientWrapper:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _container(self, name: str) -> ContainerProxy:
        container = self._containers.get(name)
        if container is None:
            reason = f"unknown container {name}" if self.connected else "client not initialized"
            raise StorageIOError("cosmos_container", cause=RuntimeError(reason))
        return container

    async def create_item(self, container_name: str, item: dict[str, Any]) -> dict[str, Any]:
        """Create a document; 409 if its ID already exists in the partition."""
        container = self._container(container_name)
        return await self._with_retry(lambda: container.create_item(body=item))

    async def upsert_item(self, container_name: str, item: dict[str, Any]) -> dict[str, Any]:
        container = self._container(container_name)
        return await self._with_retry(lambda: container.upsert_item(body=item))

    async def replace_item(
        self, container_name: str, item: dict[str, Any], etag: str
    ) -> dict[str, Any]:
        """Replace a document only if it still has ``etag``; 412 otherwise."""
        container = self._container(container_name)
        return await self._with_retry(
            lambda: container.replace_item(
                item=item["id"],
                body=item,
                etag=etag,
                match_condition=MatchConditions.IfNotModified,
            )
        )

    async def read_item(
        self, container_name: str, item_id: str, partition_key: str
    ) -> dict[str, Any] | None:
        """Point read; None when the document does not exist."""
        container = self._container(container_name)
        try:
            return await self._with_retry(
                lambda: container.read_item(item=item_id, partition_key=partition_key)
            )
        except CosmosResourceNotFoundError:
            return None

    async def query_items(
        self,
        container_name: str,
        query: str,
        parameters: list[dict[str, Any]] | None = None,
        partition_key: str | None = None,
    ) -> list[dict[str, Any]]:
        """Run a parameterized query, scoped to one channel's partition when given."""
        container = self._container(container_name)
        options: dict[str, Any] = {}
        if partition_key is not None:
            options["partition_key"] = partition_key

        async def collect() -> list[dict[str, Any]]:
            pages = container.query_items(query=query, parameters=parameters or [], **options)
            return [item async for item in pages]

        return await self._with_retry(collect)

    async def _with_retry(self, operation: Any) -> Any:
        try:
            return await retry_with_backoff(operation, config=self.config.retry)
        except CosmosHttpResponseError:
            raise
        except Exception as e:
            raise StorageIOError("cosmos_operation", cause=e) from e
