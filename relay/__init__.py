"""
Invocation relay between a deployed function and a developer's machine.
"""

from mirror_utils.config import BACKEND_DYNAMODB, BACKEND_POSTGRES, RelayConfig
from relay.base import TransportStore
from relay.dispatcher import Dispatcher
from relay.dynamo import DynamoStore
from relay.gateway import Gateway
from relay.handlers import (
    FileHandlerResolver,
    HandlerNotFound,
    HandlerResolver,
    MappingResolver,
)
from relay.liveness import LivenessMonitor
from relay.postgres import PostgresStore
from relay.records import InvocationPayload, InvocationRecord, InvokeStatus, LivenessRecord


def get_store(config: RelayConfig) -> TransportStore:
    """
    Factory function to build the transport store a configuration asks for.

    Args:
        config: Relay configuration; ``backend`` selects the store

    Returns:
        Instance of the matching TransportStore

    Raises:
        ValueError: If the backend is not supported
    """
    stores = {
        BACKEND_DYNAMODB: lambda: DynamoStore(
            config.table_name, region=config.region, profile=config.profile
        ),
        BACKEND_POSTGRES: lambda: PostgresStore(
            database_url=config.database_url, max_connections=config.max_workers + 1
        ),
    }

    builder = stores.get((config.backend or "").lower())

    if not builder:
        raise ValueError(
            f"Unsupported backend: {config.backend}. "
            f"Supported backends: {', '.join(stores.keys())}"
        )

    return builder()


__all__ = [
    'Dispatcher',
    'DynamoStore',
    'FileHandlerResolver',
    'Gateway',
    'HandlerNotFound',
    'HandlerResolver',
    'InvocationPayload',
    'InvocationRecord',
    'InvokeStatus',
    'LivenessMonitor',
    'LivenessRecord',
    'MappingResolver',
    'PostgresStore',
    'TransportStore',
    'get_store',
]
