"""
Smokey Planning Engine
Tests: Tool Gateway.

Covers:
    - in-process handlers (output shaping, errors)
    - decorator registry
    - HTTP endpoints through an injected requests.Session
"""

from unittest.mock import MagicMock

import pytest
import requests

from smokey.core.exceptions import ToolExecutionError
from smokey.integrations import tool_gateway
from smokey.integrations.tool_gateway import ToolGateway, register_tool


def _response(status_code=200, json_data=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    if isinstance(json_data, Exception):
        resp.json.side_effect = json_data
    else:
        resp.json.return_value = json_data
    return resp


class TestHandlers:
    def test_dict_output_passes_through(self):
        gw = ToolGateway()
        gw.register_handler("audit", lambda payload: {"seen": payload["url"]})
        assert gw.invoke("audit", {"url": "https://a.example"}) == {"seen": "https://a.example"}

    def test_scalar_output_is_wrapped(self):
        gw = ToolGateway()
        gw.register_handler("burnt", lambda payload: ["fix titles"])
        assert gw.invoke("burnt", {}) == {"result": ["fix titles"]}

    def test_none_output_is_an_error(self):
        gw = ToolGateway()
        gw.register_handler("crimson", lambda payload: None)
        with pytest.raises(ToolExecutionError, match="no output"):
            gw.invoke("crimson", {})

    def test_handler_exception_is_wrapped(self):
        gw = ToolGateway()

        def boom(payload):
            raise KeyError("url")

        gw.register_handler("audit", boom)
        with pytest.raises(ToolExecutionError) as exc:
            gw.invoke("audit", {})
        assert exc.value.message.startswith("KeyError")
        assert exc.value.timed_out is False

    def test_unrouted_tool(self):
        gw = ToolGateway()
        assert gw.is_available("midnight") is False
        with pytest.raises(ToolExecutionError, match="No handler or endpoint"):
            gw.invoke("midnight", {})

    def test_registry_decorator(self, monkeypatch):
        monkeypatch.setattr(tool_gateway, "_tool_registry", {})

        @register_tool("midnight")
        def run_midnight(payload):
            return {"status": "completed", "mode": payload.get("mode")}

        gw = ToolGateway()
        assert gw.is_available("midnight")
        assert gw.invoke("midnight", {"mode": "homepage_edit"})["mode"] == "homepage_edit"

    def test_instance_handler_wins_over_registry(self, monkeypatch):
        monkeypatch.setattr(tool_gateway, "_tool_registry", {"audit": lambda p: {"from": "registry"}})
        gw = ToolGateway()
        gw.register_handler("audit", lambda p: {"from": "instance"})
        assert gw.invoke("audit", {}) == {"from": "instance"}


class TestHttpEndpoints:
    def test_blank_endpoints_are_ignored(self):
        gw = ToolGateway(endpoints={"audit": "https://tools.example/audit", "burnt": ""})
        assert gw.endpoints == {"audit": "https://tools.example/audit"}

    def test_post_json_payload(self):
        session = MagicMock()
        session.post.return_value = _response(200, {"technical_score": 91})
        gw = ToolGateway(endpoints={"audit": "https://tools.example/audit"}, timeout=5,
                         session=session)
        assert gw.invoke("audit", {"url": "https://a.example"}) == {"technical_score": 91}
        session.post.assert_called_once_with("https://tools.example/audit",
                                             json={"url": "https://a.example"}, timeout=5)

    def test_http_error_status(self):
        session = MagicMock()
        session.post.return_value = _response(503, text="maintenance")
        gw = ToolGateway(endpoints={"audit": "https://tools.example/audit"}, session=session)
        with pytest.raises(ToolExecutionError, match="HTTP 503: maintenance"):
            gw.invoke("audit", {})

    def test_timeout(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout()
        gw = ToolGateway(endpoints={"audit": "https://tools.example/audit"}, session=session)
        with pytest.raises(ToolExecutionError) as exc:
            gw.invoke("audit", {}, timeout=1.5)
        assert exc.value.timed_out is True
        assert "1.5s" in exc.value.message

    def test_network_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        gw = ToolGateway(endpoints={"audit": "https://tools.example/audit"}, session=session)
        with pytest.raises(ToolExecutionError, match="Network error"):
            gw.invoke("audit", {})

    def test_non_json_body(self):
        session = MagicMock()
        session.post.return_value = _response(200, ValueError("no json"))
        gw = ToolGateway(endpoints={"audit": "https://tools.example/audit"}, session=session)
        with pytest.raises(ToolExecutionError, match="non-JSON"):
            gw.invoke("audit", {})
