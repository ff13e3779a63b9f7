import json
import os
import textwrap

import pytest

from mirror_utils.config import FunctionMapping
from relay.handlers import (
    FileHandlerResolver,
    HandlerNotFound,
    LocalContext,
    MappingResolver,
    is_api_request,
    load_handler_reference,
)


def _write(path, source):
    path.write_text(textwrap.dedent(source))
    return path


class TestIsApiRequest:
    @pytest.mark.parametrize("event, expected", [
        ({"httpMethod": "GET", "path": "/orders"}, True),
        ({"requestContext": {"http": {"method": "POST"}}}, True),
        ({"Records": [{"eventSource": "aws:sqs"}]}, False),
        ({"httpMethod": "GET"}, False),
        ({"requestContext": {"stage": "dev"}}, False),
        ("plain string", False),
        (None, False),
    ])
    def test_detection(self, event, expected):
        assert is_api_request(event) is expected


class TestMappingResolver:
    def test_resolves_known_names(self):
        handler = lambda event: event
        resolver = MappingResolver({"F": handler})

        assert resolver.resolve("F") is handler
        assert resolver.names() == ["F"]

    def test_unknown_name(self):
        with pytest.raises(HandlerNotFound, match="G"):
            MappingResolver({}).resolve("G")


class TestFileHandlerResolver:
    def test_calls_handler_with_event_and_context(self, tmp_path):
        _write(tmp_path / "orders_app.py", """
            def handler(event, context):
                return {"function": context.function_name, "value": event["value"]}
        """)
        resolver = FileHandlerResolver(
            {"GetOrder": FunctionMapping(name="GetOrder", path="orders_app.py")},
            root=str(tmp_path),
        )

        result = resolver.resolve("GetOrder")({"value": 7})

        assert result == {"function": "GetOrder", "value": 7}

    def test_applies_function_environment(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MIRROR_TEST_ORDERS_TABLE", raising=False)
        _write(tmp_path / "env_app.py", """
            import os

            def handler(event, context):
                return os.environ.get("MIRROR_TEST_ORDERS_TABLE")
        """)
        mapping = FunctionMapping(
            name="Env", path="env_app.py", environment={"MIRROR_TEST_ORDERS_TABLE": "orders-dev"}
        )
        resolver = FileHandlerResolver({"Env": mapping}, root=str(tmp_path))

        try:
            assert resolver.resolve("Env")({}) == "orders-dev"
        finally:
            os.environ.pop("MIRROR_TEST_ORDERS_TABLE", None)

    def test_picks_up_edits_between_resolutions(self, tmp_path):
        _write(tmp_path / "mirror_reload_helper.py", "VALUE = 1\n")
        _write(tmp_path / "reload_app.py", """
            import mirror_reload_helper

            def handler(event, context):
                return mirror_reload_helper.VALUE
        """)
        resolver = FileHandlerResolver(
            {"Reload": FunctionMapping(name="Reload", path="reload_app.py")},
            root=str(tmp_path),
        )
        assert resolver.resolve("Reload")({}) == 1

        _write(tmp_path / "mirror_reload_helper.py", "VALUE = 22  # edited\n")

        assert resolver.resolve("Reload")({}) == 22

    def test_dotted_handler_name(self, tmp_path):
        _write(tmp_path / "consumer_app.py", """
            class Consumer:
                @staticmethod
                def handle(event, context):
                    return "handled"
        """)
        mapping = FunctionMapping(name="Consumer", path=str(tmp_path / "consumer_app.py"),
                                  handler="Consumer.handle")

        resolver = FileHandlerResolver({"Consumer": mapping}, root=str(tmp_path))

        assert resolver.resolve("Consumer")({}) == "handled"

    def test_unmapped_function(self, tmp_path):
        with pytest.raises(HandlerNotFound, match="Nope"):
            FileHandlerResolver({}, root=str(tmp_path)).resolve("Nope")

    def test_missing_file(self, tmp_path):
        resolver = FileHandlerResolver(
            {"Gone": FunctionMapping(name="Gone", path="gone.py")}, root=str(tmp_path)
        )
        with pytest.raises(HandlerNotFound, match="not found"):
            resolver.resolve("Gone")

    def test_module_that_fails_to_import(self, tmp_path):
        _write(tmp_path / "broken_app.py", "raise ImportError('missing dependency')\n")
        resolver = FileHandlerResolver(
            {"Broken": FunctionMapping(name="Broken", path="broken_app.py")}, root=str(tmp_path)
        )
        with pytest.raises(HandlerNotFound, match="missing dependency"):
            resolver.resolve("Broken")

    def test_missing_handler_attribute(self, tmp_path):
        _write(tmp_path / "no_handler_app.py", "VALUE = 1\n")
        resolver = FileHandlerResolver(
            {"NoHandler": FunctionMapping(name="NoHandler", path="no_handler_app.py", handler="main")},
            root=str(tmp_path),
        )
        with pytest.raises(HandlerNotFound, match="main"):
            resolver.resolve("NoHandler")


class TestLocalContext:
    def test_looks_like_a_lambda_context(self):
        context = LocalContext(function_name="F")

        assert context.function_name == "F"
        assert context.aws_request_id
        assert context.get_remaining_time_in_millis() > 0


class TestHandlerReference:
    def test_dotted_module(self):
        assert load_handler_reference("json.dumps") is json.dumps

    def test_path_style_module(self):
        assert load_handler_reference("tests/assets/orders_handler.handler")({"a": 1}, None)["source"] == "original"

    @pytest.mark.parametrize("reference", ["handler", "no_such_module_xyz.handler", "json.no_such_function"])
    def test_invalid_references(self, reference):
        with pytest.raises(HandlerNotFound):
            load_handler_reference(reference)
