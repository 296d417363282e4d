"""Tests for broker callback Flask server module."""

from datetime import datetime
from unittest import mock

import pytest

from broker_callback.audit import (
    BackgroundAuditSink,
    LoggingAuditSink,
    MemoryAuditSink,
)
from broker_callback.config import CallbackConfig
from broker_callback.exceptions import AuditEmissionError
from broker_callback.handler import CallbackHandler
from broker_callback.models import CallbackResponse
from broker_callback.server import CallbackServer, build_audit_sink


class TestCallbackServer:
    """Tests for CallbackServer class."""

    @pytest.fixture
    def sink(self):
        """Create in-memory audit sink."""
        return MemoryAuditSink()

    @pytest.fixture
    def server(self, sink):
        """Create test callback server."""
        config = CallbackConfig()
        return CallbackServer(config, handler=CallbackHandler(config, audit_sink=sink))

    @pytest.fixture
    def client(self, server):
        """Create Flask test client."""
        return server.app.test_client()

    def test_server_initialization(self):
        """CallbackServer can be initialized with defaults."""
        server = CallbackServer()

        assert server.config == CallbackConfig()
        assert server.app is not None
        assert isinstance(server.handler.audit_sink, LoggingAuditSink)

    def test_get_with_token_returns_200(self, client, sink):
        """GET /callback?tokenId=abc123 is acknowledged."""
        response = client.get("/callback?tokenId=abc123")

        assert response.status_code == 200
        assert "application/json" in response.content_type
        data = response.get_json()
        assert data["success"] is True
        assert data["message"] == "OAuth callback received successfully"
        datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00"))
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert sink.records[0].outcome_kind == "accepted"
        assert sink.records[0].client_address == "127.0.0.1"

    def test_get_without_query_returns_400(self, client):
        """GET /callback without tokenId is rejected."""
        response = client.get("/callback")

        assert response.status_code == 400
        assert response.get_json() == {
            "success": False,
            "error": "Missing tokenId parameter",
        }
        assert response.headers["Access-Control-Allow-Origin"] == "*"

    def test_get_with_empty_token_returns_400(self, client):
        """GET /callback?tokenId= is rejected."""
        response = client.get("/callback?tokenId=")

        assert response.status_code == 400

    def test_post_returns_405_from_handler(self, client, sink):
        """POST is rejected by the handler, not Flask."""
        response = client.post("/callback?tokenId=abc123")

        assert response.status_code == 405
        assert response.get_json() == {
            "success": False,
            "error": "Method not allowed. Only GET requests are accepted.",
        }
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert sink.records[0].reason == "method_not_allowed"

    @pytest.mark.parametrize("method", ["put", "patch", "delete"])
    def test_other_methods_return_405(self, client, method):
        """Every non-GET method gets the JSON 405 body."""
        response = getattr(client, method)("/callback")

        assert response.status_code == 405
        assert response.get_json()["success"] is False

    def test_options_preflight(self, client, sink):
        """OPTIONS returns 204 with CORS headers and no audit record."""
        response = client.options("/callback")

        assert response.status_code == 204
        assert response.get_data() == b""
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert response.headers["Access-Control-Allow-Methods"] == "GET"
        assert response.headers["Access-Control-Allow-Headers"] == "Content-Type"
        assert sink.records == []

    def test_duplicate_query_keys_use_first_value(self, server, sink):
        """Repeated tokenId keys resolve to the first value."""
        consumer = mock.Mock()
        server.handler.on_accepted = consumer

        response = server.app.test_client().get("/callback?tokenId=first&tokenId=second")

        assert response.status_code == 200
        assert consumer.call_args[0][0].reveal() == "first"

    def test_token_not_echoed(self, client):
        """Response body never contains the token value."""
        response = client.get("/callback?tokenId=tok-4f9c2e7a")

        assert "tok-4f9c2e7a" not in response.get_data(as_text=True)

    def test_forwarded_for_ignored_by_default(self, client, sink):
        """X-Forwarded-For is ignored unless proxies are trusted."""
        client.get("/callback?tokenId=abc", headers={"X-Forwarded-For": "198.51.100.9"})

        assert sink.records[0].client_address == "127.0.0.1"

    def test_forwarded_for_used_when_trusted(self, sink):
        """First X-Forwarded-For entry becomes the client address."""
        config = CallbackConfig(trust_proxy_headers=True)
        server = CallbackServer(config, handler=CallbackHandler(config, audit_sink=sink))

        server.app.test_client().get(
            "/callback?tokenId=abc",
            headers={"X-Forwarded-For": "198.51.100.9, 10.0.0.1"},
        )

        assert sink.records[0].client_address == "198.51.100.9"

    def test_custom_callback_path(self, sink):
        """Route follows configured callback_path."""
        config = CallbackConfig(callback_path="/auth/dhan/callback")
        server = CallbackServer(config, handler=CallbackHandler(config, audit_sink=sink))
        client = server.app.test_client()

        assert client.get("/auth/dhan/callback?tokenId=abc").status_code == 200
        assert client.get("/callback?tokenId=abc").status_code == 404

    def test_health(self, client):
        """/health returns status JSON."""
        response = client.get("/health")

        assert response.status_code == 200
        assert "application/json" in response.content_type
        assert response.get_json()["status"] == "healthy"

    def test_to_flask_response_copies_headers(self):
        """to_flask_response keeps status, headers and body."""
        flask_response = CallbackServer.to_flask_response(
            CallbackResponse(
                status=400,
                headers={"Content-Type": "application/json", "X-Test": "1"},
                body={"success": False},
            )
        )

        assert flask_response.status_code == 400
        assert flask_response.headers["X-Test"] == "1"
        assert flask_response.get_json() == {"success": False}


class TestHttpBoundary:
    """Tests for requests that fail before or outside the callback route."""

    @pytest.fixture
    def sink(self):
        """Create in-memory audit sink."""
        return MemoryAuditSink()

    @pytest.fixture
    def server(self, sink):
        """Create test callback server."""
        config = CallbackConfig()
        return CallbackServer(config, handler=CallbackHandler(config, audit_sink=sink))

    @pytest.mark.parametrize("method", ["TRACE", "PROPFIND", "CONNECT", "BREW"])
    def test_unlisted_methods_get_json_405(self, server, sink, method):
        """Verbs outside the route's method list still get the handler's 405."""
        response = server.app.test_client().open("/callback?tokenId=abc123", method=method)

        assert response.status_code == 405
        assert "application/json" in response.content_type
        assert response.get_json() == {
            "success": False,
            "error": "Method not allowed. Only GET requests are accepted.",
        }
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert len(sink.records) == 1
        assert sink.records[0].reason == "method_not_allowed"
        assert sink.records[0].token_present is True

    def test_other_routes_keep_default_405(self, server, sink):
        """Only the callback path is taken over by the handler."""
        response = server.app.test_client().post("/health")

        assert response.status_code == 405
        assert "Access-Control-Allow-Origin" not in response.headers
        assert sink.records == []

    def test_adapter_fault_becomes_json_500(self, server, sink):
        """A failure while reading the Flask request is contained."""
        with mock.patch.object(
            server, "_client_address", side_effect=RuntimeError("boom")
        ):
            response = server.app.test_client().get("/callback?tokenId=abc123")

        assert response.status_code == 500
        assert response.get_json() == {"success": False, "error": "Internal server error"}
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert len(sink.records) == 1
        record = sink.records[0]
        assert record.outcome_kind == "server_fault"
        assert record.fault_detail == "RuntimeError: boom"
        assert record.token_present is True
        assert record.client_address == "127.0.0.1"

    def test_adapter_fault_detail_redacts_token(self, server, sink):
        """Token value is stripped from adapter fault text."""
        with mock.patch.object(
            server,
            "_inbound_request",
            side_effect=ValueError("cannot parse tok-4f9c2e7a"),
        ):
            response = server.app.test_client().get("/callback?tokenId=tok-4f9c2e7a")

        assert response.status_code == 500
        assert "tok-4f9c2e7a" not in response.get_data(as_text=True)
        assert "tok-4f9c2e7a" not in sink.records[0].fault_detail
        assert "<redacted>" in sink.records[0].fault_detail


class TestSslContext:
    """Tests for TLS setup."""

    def test_no_context_without_certs(self):
        """Plain HTTP when no certificates are configured."""
        assert CallbackServer()._ssl_context() is None

    def test_missing_cert_raises(self, tmp_path):
        """_ssl_context raises FileNotFoundError for a missing certificate."""
        config = CallbackConfig(
            ssl_cert_path=str(tmp_path / "fullchain.pem"),
            ssl_key_path=str(tmp_path / "privkey.pem"),
        )

        with pytest.raises(FileNotFoundError, match="SSL certificate not found"):
            CallbackServer(config)._ssl_context()

    def test_missing_key_raises(self, tmp_path):
        """_ssl_context raises FileNotFoundError for a missing key."""
        cert = tmp_path / "fullchain.pem"
        cert.write_text("cert")
        config = CallbackConfig(
            ssl_cert_path=str(cert), ssl_key_path=str(tmp_path / "privkey.pem")
        )

        with pytest.raises(FileNotFoundError, match="SSL key not found"):
            CallbackServer(config)._ssl_context()


class TestRun:
    """Tests for CallbackServer.run and close."""

    def test_run_passes_config_to_flask(self):
        """run() binds the configured host and port."""
        server = CallbackServer(CallbackConfig(host="127.0.0.1", port=9000))

        with mock.patch.object(server.app, "run") as mock_run:
            server.run()

        mock_run.assert_called_once_with(
            host="127.0.0.1",
            port=9000,
            ssl_context=None,
            debug=False,
            use_reloader=False,
            threaded=True,
        )

    def test_run_closes_background_sink(self, tmp_path):
        """run() closes a background audit sink on exit."""
        server = CallbackServer(
            CallbackConfig(audit_log_file=str(tmp_path / "audit.jsonl"))
        )
        sink = server.handler.audit_sink

        with mock.patch.object(server.app, "run"):
            server.run()

        with pytest.raises(AuditEmissionError, match="closed"):
            sink.emit(mock.Mock())


class TestBuildAuditSink:
    """Tests for build_audit_sink."""

    def test_logging_only_without_file(self):
        """No audit file means log-only auditing."""
        assert isinstance(build_audit_sink(CallbackConfig()), LoggingAuditSink)

    def test_background_file_sink_with_file(self, tmp_path):
        """Audit file enables the background JSON Lines sink."""
        audit_file = tmp_path / "audit.jsonl"
        sink = build_audit_sink(CallbackConfig(audit_log_file=str(audit_file)))

        assert isinstance(sink, BackgroundAuditSink)
        sink.close()

    def test_end_to_end_audit_file(self, tmp_path):
        """Callbacks served over HTTP land in the audit file."""
        audit_file = tmp_path / "audit.jsonl"
        server = CallbackServer(CallbackConfig(audit_log_file=str(audit_file)))
        client = server.app.test_client()

        client.get("/callback?tokenId=tok-4f9c2e7a")
        client.get("/callback")
        client.options("/callback")
        server.close()

        content = audit_file.read_text()
        assert len(content.splitlines()) == 2
        assert "tok-4f9c2e7a" not in content
