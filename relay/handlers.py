"""
Local handler resolution.

The dispatcher only needs ``resolve(name) -> callable(event)``. The file
based resolver re-imports the handler's module on every resolution so a
developer can edit code between two triggers without restarting.
"""
import functools
import importlib.util
import os
import sys
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from mirror_utils.config import FunctionMapping
from mirror_utils.logger import get_logger

logger = get_logger(__name__)

LocalHandler = Callable[[Any], Any]

# Modules of the relay itself are never purged between reloads
_OWN_PACKAGES = ("relay", "mirror_utils", "local_client", "lambda_function")


class HandlerNotFound(LookupError):
    """Raised when no local callable can be produced for a function name."""


def is_api_request(event: Any) -> bool:
    """
    Whether the trigger waits for the handler's response.

    API Gateway REST events carry httpMethod and path; HTTP APIs and
    function URLs carry requestContext.http.
    """
    if not isinstance(event, dict):
        return False
    if event.get("httpMethod") and event.get("path"):
        return True
    request_context = event.get("requestContext")
    return isinstance(request_context, dict) and isinstance(request_context.get("http"), dict)


def always_respond(event: Any) -> bool:
    return True


def response_predicate(release_non_api: bool) -> Callable[[Any], bool]:
    """
    Which events a gateway waits on.

    By default every caller gets its result. With ``release_non_api`` only API
    requests do: other events are deleted by the dispatcher once completed and
    their gateway returns as soon as the record is gone.
    """
    return is_api_request if release_non_api else always_respond


@dataclass
class LocalContext:
    """Stand-in for the Lambda context object handed to local handlers."""
    function_name: str
    aws_request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    function_version: str = "$LATEST"
    memory_limit_in_mb: int = 128
    invoked_function_arn: str = ""
    log_group_name: str = "local"
    log_stream_name: str = "local"
    timeout_millis: int = 900_000

    def get_remaining_time_in_millis(self) -> int:
        return self.timeout_millis


class HandlerResolver(ABC):
    @abstractmethod
    def resolve(self, function_name: str) -> LocalHandler:
        """
        Raises:
            HandlerNotFound: If ``function_name`` cannot be mapped
        """

    @abstractmethod
    def names(self) -> List[str]:
        pass


class MappingResolver(HandlerResolver):
    """Resolver over an in-memory ``{name: callable(event)}`` mapping."""

    def __init__(self, handlers: Mapping[str, LocalHandler]):
        self.handlers = dict(handlers)

    def resolve(self, function_name: str) -> LocalHandler:
        try:
            return self.handlers[function_name]
        except KeyError:
            raise HandlerNotFound(f"No local handler mapped for {function_name}")

    def names(self) -> List[str]:
        return sorted(self.handlers)


def _forget_project_modules(root: Path) -> None:
    """Drop cached modules loaded from under ``root`` so the next import re-reads them."""
    for name, module in list(sys.modules.items()):
        if name == "__main__" or name.split(".")[0] in _OWN_PACKAGES:
            continue
        module_file = getattr(module, "__file__", None)
        if not module_file:
            continue
        path = Path(module_file).resolve()
        if "site-packages" in path.parts or "dist-packages" in path.parts:
            continue
        if root == path or root in path.parents:
            del sys.modules[name]


def load_handler(path: str, handler_name: str, root: Optional[Path] = None) -> Callable:
    """
    Import ``path`` from scratch and return its ``handler_name`` attribute.

    ``handler_name`` may be dotted ("app.handlers.get") to reach a handler
    nested in an object.

    Raises:
        HandlerNotFound: If the file cannot be imported or lacks the attribute
    """
    root = (root or Path.cwd()).resolve()
    module_path = Path(path)
    if not module_path.is_absolute():
        module_path = root / module_path
    module_path = module_path.resolve()

    if not module_path.is_file():
        raise HandlerNotFound(f"Handler file not found: {module_path}")

    _forget_project_modules(root)
    for search_path in (str(root), str(module_path.parent)):
        if search_path not in sys.path:
            sys.path.insert(0, search_path)

    module_name = f"_lambda_mirror_{module_path.stem}_{uuid.uuid4().hex[:8]}"
    spec = importlib.util.spec_from_file_location(module_name, module_path)
    if spec is None or spec.loader is None:
        raise HandlerNotFound(f"Cannot import {module_path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        logger.error("Failed importing local handler module", path=str(module_path), error=str(e))
        raise HandlerNotFound(f"Failed importing {module_path}: {e}")

    try:
        return functools.reduce(getattr, handler_name.split("."), module)
    except AttributeError:
        raise HandlerNotFound(f"{module_path} has no handler named {handler_name}")


class FileHandlerResolver(HandlerResolver):
    """
    Resolver over FunctionMapping entries loaded from the local config file.

    Resolved handlers are called Lambda-style, ``handler(event, context)``,
    after the function's environment variables have been exported.
    """

    def __init__(self, mappings: Mapping[str, FunctionMapping], root: Optional[str] = None):
        self.mappings = dict(mappings)
        self.root = Path(root) if root else Path.cwd()
        # Module reloads touch sys.modules and sys.path
        self._lock = threading.Lock()

    def names(self) -> List[str]:
        return sorted(self.mappings)

    def resolve(self, function_name: str) -> LocalHandler:
        mapping = self.mappings.get(function_name)
        if mapping is None:
            raise HandlerNotFound(f"No local handler mapped for {function_name}")

        with self._lock:
            handler = load_handler(mapping.path, mapping.handler, self.root)

        def invoke(event: Any) -> Any:
            os.environ.update(mapping.environment)
            return handler(event, LocalContext(function_name=function_name))

        return invoke


def load_handler_reference(reference: str) -> Callable:
    """
    Resolve a Lambda handler string such as ``src/orders/app.handler`` or
    ``orders.app.handler`` to the callable it names.
    """
    module_ref, _, attribute = reference.rpartition(".")
    if not module_ref or not attribute:
        raise HandlerNotFound(f"Invalid handler reference: {reference!r}")

    module_name = module_ref.replace("/", ".").strip(".")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise HandlerNotFound(f"Cannot import {module_name} for handler {reference}: {e}")

    try:
        return getattr(module, attribute)
    except AttributeError:
        raise HandlerNotFound(f"{module_name} has no attribute {attribute}")
