import os
from typing import Any, Callable

from mirror_utils.config import RelayConfig
from mirror_utils.logger import get_logger
from relay import Gateway, get_store
from relay.handlers import load_handler_reference

logger = get_logger("lambda-mirror-gateway")

# Reused by warm containers, like the store clients it holds
_gateway = None


def _build_gateway(original_handler: Callable[[Any, Any], Any]) -> Gateway:
    config = RelayConfig.from_env().validate()
    return Gateway(config, get_store(config), original_handler)


def lambda_handler(event, context):
    """
    Entry point the infra binder installs in place of a function's handler.

    Environment (set by the binder):
        ORIGINAL_HANDLER: the function's real handler, e.g. "src/orders/app.handler"
        MIRROR_FUNCTION_NAME: logical name the local side maps to a handler
        MIRROR_CHANNEL, MIRROR_TABLE_NAME, MIRROR_BACKEND: relay settings

    Without ORIGINAL_HANDLER nothing can run, so the invocation is dropped.
    With incomplete relay settings the original handler runs directly.
    """
    log = get_logger("lambda-mirror-gateway", context)

    original_ref = os.environ.get("ORIGINAL_HANDLER")
    if not original_ref:
        log.error("Missing ORIGINAL_HANDLER environment variable, exiting")
        return None

    original_handler = load_handler_reference(original_ref)
    function_name = os.environ.get("MIRROR_FUNCTION_NAME") or getattr(context, "function_name", None)

    global _gateway
    if _gateway is None:
        try:
            _gateway = _build_gateway(original_handler)
        except ValueError as e:
            log.error("Relay settings incomplete, running original handler", error=str(e))
            return original_handler(event, context)

    log.debug("Incoming event", function=function_name,
              event_source=_event_source(event))
    return _gateway.handle(function_name, event, context)


def _event_source(event) -> Any:
    if isinstance(event, dict):
        records = event.get("Records") or [{}]
        if isinstance(records, list) and records and isinstance(records[0], dict):
            return records[0].get("eventSource")
    return None
