import base64
import json
import logging
import ssl
import threading
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import SimpleNamespace
from urllib.parse import urlsplit

import pytest

from lagnotify.config import Config, ConfigurationError
from lagnotify.http_notifier import HttpNotifier
from lagnotify.models import ConsumerGroupStatus, Status
from lagnotify.templating import compile_template

OPEN_BODY = (
    '{"template":"template_open","id":"{{ ID }}","cluster":"{{ Cluster }}","group":"{{ Group }}"}'
)
CLOSE_BODY = (
    '{"template":"template_close","id":"{{ ID }}","cluster":"{{ Cluster }}","group":"{{ Group }}"}'
)


def make_config(overrides=None):
    data = {
        "class-name": "http",
        "url-open": "url_open",
        "url-close": "url_close",
        "template-open": "template_open",
        "template-close": "template_close",
        "send-close": False,
        "headers": {"Token": "token"},
        "noverify": True,
    }
    data.update(overrides or {})
    return Config({"notifier": {"test": data}})


def status_warning():
    return ConsumerGroupStatus(cluster="testcluster", group="testgroup", status=Status.WARNING)


@pytest.fixture
def server(monkeypatch):
    for var in ("http_proxy", "HTTP_PROXY", "https_proxy", "HTTPS_PROXY", "all_proxy", "ALL_PROXY"):
        monkeypatch.delenv(var, raising=False)
    received = []

    class Handler(BaseHTTPRequestHandler):
        response_code = 200

        def _handle(self):
            length = int(self.headers.get("Content-Length", 0))
            received.append(
                {
                    "method": self.command,
                    "path": self.path,
                    "headers": self.headers,
                    "body": self.rfile.read(length),
                }
            )
            self.send_response(self.response_code)
            self.send_header("Content-Length", "2")
            self.end_headers()
            self.wfile.write(b"ok")

        do_POST = _handle
        do_PUT = _handle
        do_DELETE = _handle

        def log_message(self, *args):
            pass

    httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield SimpleNamespace(
        url=f"http://127.0.0.1:{httpd.server_port}", received=received, handler=Handler
    )
    httpd.shutdown()
    httpd.server_close()


def test_configure_sets_defaults():
    module = HttpNotifier(make_config())
    module.configure("test", "notifier.test")
    assert module.url_open == "url_open"
    assert module.method_open == "POST"
    assert module.send_close is False
    assert module.url_close == ""
    assert module.timeout == 5


def test_configure_send_close_reads_close_settings():
    module = HttpNotifier(make_config({"send-close": True, "method-close": "DELETE", "timeout": 2}))
    module.configure("test", "notifier.test")
    assert module.url_close == "url_close"
    assert module.method_close == "DELETE"
    assert module.timeout == 2


def test_configure_requires_url_open():
    module = HttpNotifier(make_config({"url-open": ""}))
    with pytest.raises(ConfigurationError):
        module.configure("test", "notifier.test")


def test_configure_requires_url_close_when_sending_close():
    module = HttpNotifier(make_config({"send-close": True, "url-close": ""}))
    with pytest.raises(ConfigurationError):
        module.configure("test", "notifier.test")


def test_accept_consumer_group_always_true():
    module = HttpNotifier(make_config())
    module.configure("test", "notifier.test")
    assert module.accept_consumer_group(ConsumerGroupStatus()) is True


def test_build_request_renders_url_body_and_headers():
    module = HttpNotifier(
        make_config({"url-open": "http://example.com/alert?id={{ ID }}"}),
        template_open=compile_template(OPEN_BODY),
    )
    module.configure("test", "notifier.test")
    request = module.build_request(status_warning(), "testidstring", datetime.now(), False)
    assert request.full_url == "http://example.com/alert?id=testidstring"
    assert request.get_method() == "POST"
    assert request.get_header("Content-type") == "application/json"
    assert request.get_header("Token") == "token"
    assert request.get_header("Authorization") is None
    assert json.loads(request.data) == {
        "template": "template_open",
        "id": "testidstring",
        "cluster": "testcluster",
        "group": "testgroup",
    }


def test_build_request_adds_basic_auth():
    module = HttpNotifier(
        make_config(
            {"url-open": "http://example.com/", "username": "user", "password": "password"}
        ),
        template_open=compile_template(OPEN_BODY),
    )
    module.configure("test", "notifier.test")
    request = module.build_request(status_warning(), "id", None, False)
    scheme, _, encoded = request.get_header("Authorization").partition(" ")
    assert scheme == "Basic"
    assert base64.b64decode(encoded).decode() == "user:password"


def test_build_request_without_template_raises():
    module = HttpNotifier(make_config({"url-open": "http://example.com/"}))
    module.configure("test", "notifier.test")
    with pytest.raises(ValueError):
        module.build_request(status_warning(), "id", None, False)


def test_notify_open(server):
    module = HttpNotifier(
        make_config({"url-open": server.url + "/?id={{ ID }}"}),
        template_open=compile_template(OPEN_BODY),
    )
    module.configure("test", "notifier.test")

    module.notify(status_warning(), "testidstring", datetime.now(), False)

    assert len(server.received) == 1
    request = server.received[0]
    assert request["method"] == "POST"
    assert request["headers"].get_all("Content-Type") == ["application/json"]
    assert request["headers"]["Token"] == "token"
    assert urlsplit(request["path"]).query == "id=testidstring"
    body = json.loads(request["body"])
    assert body == {
        "template": "template_open",
        "id": "testidstring",
        "cluster": "testcluster",
        "group": "testgroup",
    }


def test_notify_close(server):
    module = HttpNotifier(
        make_config({"send-close": True, "url-close": server.url + "/?id={{ ID }}"}),
        template_close=compile_template(CLOSE_BODY),
    )
    module.configure("test", "notifier.test")

    module.notify(status_warning(), "testidstring", datetime.now(), True)

    assert len(server.received) == 1
    request = server.received[0]
    assert request["headers"]["Token"] == "token"
    assert urlsplit(request["path"]).query == "id=testidstring"
    body = json.loads(request["body"])
    assert body["template"] == "template_close"
    assert body["id"] == "testidstring"
    assert body["cluster"] == "testcluster"
    assert body["group"] == "testgroup"


def test_notify_uses_configured_method(server):
    module = HttpNotifier(
        make_config({"url-open": server.url + "/", "method-open": "PUT"}),
        template_open=compile_template(OPEN_BODY),
    )
    module.configure("test", "notifier.test")

    module.notify(status_warning(), "id", None, False)

    assert [request["method"] for request in server.received] == ["PUT"]


def test_notify_logs_error_status(server, caplog):
    server.handler.response_code = 500
    module = HttpNotifier(
        make_config({"url-open": server.url + "/"}),
        template_open=compile_template(OPEN_BODY),
    )
    module.configure("test", "notifier.test")

    with caplog.at_level(logging.ERROR):
        module.notify(status_warning(), "id", None, False)

    assert len(server.received) == 1
    assert "response 500" in caplog.text


def test_notify_without_template_sends_nothing(server, caplog):
    module = HttpNotifier(make_config({"url-open": server.url + "/"}))
    module.configure("test", "notifier.test")

    with caplog.at_level(logging.ERROR):
        module.notify(status_warning(), "id", None, False)

    assert server.received == []
    assert "failed to assemble request" in caplog.text


def test_noverify_disables_certificate_checks():
    module = HttpNotifier(make_config())
    module.configure("test", "notifier.test")
    handlers = [h for h in module._opener.handlers if hasattr(h, "_context")]
    assert handlers[0]._context.verify_mode == ssl.CERT_NONE