import logging
import ssl
from datetime import datetime
from unittest import mock

import pytest

from lagnotify.config import Config, ConfigurationError
from lagnotify.email_notifier import EmailNotifier
from lagnotify.models import ConsumerGroupStatus, Status
from lagnotify.templating import build_ssl_context, compile_template

OPEN_TEMPLATE = (
    "Subject: [Burrow] Kafka Consumer Lag Alert\n\n"
    "MIME-version: 1.0\n"
    "The Kafka consumer groups you are monitoring are currently showing problems.\n\n"
    "Cluster:  {{ Result.cluster }}\n"
    "Group:    {{ Result.group }}\n"
    "Status:   {{ Result.status }}\n"
    "Complete: {{ Result.complete }}\n"
    "Errors:   {{ Result.partitions | length }} partitions have problems\n"
    "{% for p in Result.partitions %}          {{ p.status }} {{ p.topic }}:{{ p.partition }}\n"
    "{% endfor %}"
)

CLOSE_TEMPLATE = (
    "Subject: [Burrow] Kafka Consumer Healthy\n\n"
    "Content-Type: text/html\n"
    "Consumer is now in a healthy state"
    "Cluster:  {{ Result.cluster }}\n"
    "Group:    {{ Result.group }}\n"
    "Status:   {{ Result.status }}\n"
)


def make_config(overrides=None):
    data = {
        "class-name": "email",
        "template-open": "template_open",
        "template-close": "template_close",
        "send-close": False,
        "server": "test.example.com",
        "port": 587,
        "from": "sender@example.com",
        "to": "receiver@example.com",
        "noverify": True,
    }
    data.update(overrides or {})
    return Config({"notifier": {"test": data}})


def make_module(overrides=None, **kwargs):
    return EmailNotifier(make_config(overrides), **kwargs)


def test_configure_reads_settings():
    module = make_module()
    module.configure("test", "notifier.test")
    assert module.name == "test"
    assert (module.server, module.port) == ("test.example.com", 587)
    assert module.from_address == "sender@example.com"
    assert module.to_address == "receiver@example.com"
    assert module.auth_type == ""
    assert module.ssl_context.verify_mode == ssl.CERT_NONE


def test_configure_plain_auth():
    module = make_module({"auth-type": "plain", "username": "user", "password": "password"})
    module.configure("test", "notifier.test")
    assert module.auth_type == "plain"
    assert module.username == "user"
    assert module.password == "password"


def test_configure_cram_md5_is_case_insensitive():
    module = make_module({"auth-type": "CramMD5", "username": "user", "password": "password"})
    module.configure("test", "notifier.test")
    assert module.auth_type == "crammd5"


@pytest.mark.parametrize(
    "overrides",
    [
        {"server": ""},
        {"port": 0},
        {"port": 70000},
        {"server": "bad host!"},
        {"from": ""},
        {"to": ""},
        {"auth-type": "kerberos"},
    ],
)
def test_configure_rejects_bad_settings(overrides):
    module = make_module(overrides)
    with pytest.raises(ConfigurationError):
        module.configure("test", "notifier.test")


def test_accept_consumer_group_always_true():
    module = make_module()
    module.configure("test", "notifier.test")
    assert module.accept_consumer_group(ConsumerGroupStatus()) is True


def test_create_message_parses_headers_and_body():
    module = make_module({"to": "a@example.com,b@example.com"})
    module.configure("test", "notifier.test")
    message = module.create_message(
        "Subject: Hello\nMIME-version: 1.0;\nContent-Type: text/html;\nline one\nSubject: again\n"
    )
    assert message["Subject"] == "Hello"
    assert message["MIME-version"] == "1.0"
    assert message["To"] == "a@example.com, b@example.com"
    assert message["From"] == "sender@example.com"
    assert message.get_content_type() == "text/html"
    body = message.get_content()
    assert "line one\n" in body
    assert "Subject: again\n" in body
    assert "Content-Type" not in body


def test_create_message_defaults_to_plain_text():
    module = make_module()
    module.configure("test", "notifier.test")
    message = module.create_message("Subject: Hi\n\nbody text")
    assert message.get_content_type() == "text/plain"
    assert message.get_content() == "\nbody text\n"


def test_create_message_requires_subject():
    module = make_module()
    module.configure("test", "notifier.test")
    with pytest.raises(ValueError, match="no subject line"):
        module.create_message("Hello there\nSubject: late\n")


@mock.patch("smtplib.SMTP")
def test_notify_open_sends_message(smtp_cls):
    module = make_module(
        {"auth-type": "plain", "username": "user", "password": "password"},
        template_open=compile_template(OPEN_TEMPLATE),
    )
    module.configure("test", "notifier.test")
    status = ConsumerGroupStatus(cluster="testcluster", group="testgroup", status=Status.WARNING)

    module.notify(status, "testidstring", datetime.now(), False)

    smtp_cls.assert_called_once_with("test.example.com", 587, timeout=10)
    client = smtp_cls.return_value
    client.auth.assert_called_once()
    assert client.auth.call_args.args[0] == "PLAIN"
    assert client.user == "user"
    message = client.send_message.call_args.args[0]
    reference = module.create_message("Subject: [Burrow] Kafka Consumer Lag Alert\n")
    assert message["Subject"] == reference["Subject"] == "[Burrow] Kafka Consumer Lag Alert"
    assert message["MIME-version"] == "1.0"
    assert message["From"] == reference["From"] == "sender@example.com"
    assert message["To"] == reference["To"] == "receiver@example.com"
    assert "Group:    testgroup" in message.get_content()
    assert "Status:   WARN" in message.get_content()


@mock.patch("smtplib.SMTP")
def test_notify_close_uses_close_template_without_auth(smtp_cls):
    module = make_module(template_close=compile_template(CLOSE_TEMPLATE))
    module.configure("test", "notifier.test")
    status = ConsumerGroupStatus(cluster="testcluster", group="testgroup", status=Status.OK)

    module.notify(status, "testidstring", datetime.now(), True)

    client = smtp_cls.return_value
    client.auth.assert_not_called()
    message = client.send_message.call_args.args[0]
    reference = module.create_message("Subject: [Burrow] Kafka Consumer Healthy\n")
    assert message["Subject"] == reference["Subject"] == "[Burrow] Kafka Consumer Healthy"
    assert message["To"] == reference["To"] == "receiver@example.com"
    assert message.get_content_type() == "text/html"
    assert "Cluster:  testcluster" in message.get_content()


@mock.patch("smtplib.SMTP_SSL")
def test_notify_uses_implicit_tls_on_port_465(smtp_ssl_cls):
    module = make_module(
        {"port": 465, "auth-type": "crammd5", "username": "user", "password": "password"},
        template_open=compile_template(OPEN_TEMPLATE),
    )
    module.configure("test", "notifier.test")
    status = ConsumerGroupStatus(cluster="c", group="g", status=Status.ERROR)

    module.notify(status, "id", None, False)

    smtp_ssl_cls.assert_called_once_with(
        "test.example.com", 465, context=module.ssl_context, timeout=10
    )
    client = smtp_ssl_cls.return_value
    assert client.auth.call_args.args[0] == "CRAM-MD5"
    client.starttls.assert_not_called()
    assert client.send_message.call_count == 1


@mock.patch("smtplib.SMTP")
def test_notify_without_subject_logs_and_sends_nothing(smtp_cls, caplog):
    module = make_module(template_open=compile_template("no subject {{ Group }}"))
    module.configure("test", "notifier.test")
    status = ConsumerGroupStatus(cluster="c", group="g", status=Status.ERROR)

    with caplog.at_level(logging.ERROR):
        module.notify(status, "id", None, False)

    smtp_cls.assert_not_called()
    assert "failed to send" in caplog.text


@mock.patch("smtplib.SMTP")
def test_notify_logs_delivery_failure(smtp_cls, caplog):
    smtp_cls.side_effect = OSError("connection refused")
    module = make_module(template_open=compile_template(OPEN_TEMPLATE))
    module.configure("test", "notifier.test")
    status = ConsumerGroupStatus(cluster="c", group="g", status=Status.ERROR)

    with caplog.at_level(logging.ERROR):
        module.notify(status, "id", None, False)

    assert "connection refused" in caplog.text


def test_build_ssl_context_missing_ca_file_raises():
    with pytest.raises(ConfigurationError):
        build_ssl_context("/etc/no/file", False, "test.example.com")