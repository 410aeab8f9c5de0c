"""Notifier that sends consumer group status as e-mail messages."""

from __future__ import annotations

import ipaddress
import re
import smtplib
import ssl
from datetime import datetime
from email.message import EmailMessage

import jinja2

from .base import Notifier
from .config import ConfigurationError
from .models import ConsumerGroupStatus
from .templating import build_ssl_context, execute_template

_SUBJECT = "Subject: "
_CONTENT_TYPE = "Content-Type: "
_MIME_VERSION = "MIME-version: "

_SMTPS_PORT = 465
_DIAL_TIMEOUT = 10
_AUTH_TYPES = ("", "plain", "crammd5")
_CREDENTIAL_FIELDS = ("username", "password")

_HOST_LABEL = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")


def _config_path(root: str, field: str) -> str:
    return f"{root}.{field}"


def _valid_host(host: str) -> bool:
    if not host:
        return False
    try:
        ipaddress.ip_address(host.strip("[]"))
        return True
    except ValueError:
        pass
    name = host[:-1] if host.endswith(".") else host
    if not name or len(name) > 253:
        return False
    return all(_HOST_LABEL.match(label) for label in name.split("."))


def _valid_server(host: str, port: int) -> bool:
    return _valid_host(host) and 0 < port < 65536


def _keyword_content(line: str, delimiter: str) -> str:
    return line.split(delimiter)[1]


class EmailNotifier(Notifier):
    """Sends one e-mail for each consumer group that passes the filters and threshold."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.server = ""
        self.port = 0
        self.from_address = ""
        self.to_address = ""
        self.auth_type = ""
        self.username = ""
        self.password = ""
        self.ssl_context: ssl.SSLContext | None = None

    def configure(self, name: str, config_root: str) -> None:
        """Validate server, port, addresses and authentication settings.

        Raises ConfigurationError when any of them is missing or wrong.
        """
        super().configure(name, config_root)
        config = self.config

        host = config.get_str(f"{config_root}.server")
        port = config.get_int(f"{config_root}.port")
        if not _valid_server(host, port):
            raise ConfigurationError("bad server or port")
        self.server = host
        self.port = port

        self.from_address = config.get_str(f"{config_root}.from")
        if not self.from_address:
            raise ConfigurationError("missing from address")

        self.to_address = config.get_str(f"{config_root}.to")
        if not self.to_address:
            raise ConfigurationError("missing to address")

        auth_type = config.get_str(f"{config_root}.auth-type").lower()
        if auth_type not in _AUTH_TYPES:
            raise ConfigurationError(f"unknown auth type: {auth_type}")
        self.auth_type = auth_type
        self.username, self.password = (
            config.get_str(_config_path(config_root, field)) for field in _CREDENTIAL_FIELDS
        )

        self.ssl_context = build_ssl_context(
            config.get_str(f"{config_root}.extra-ca"),
            config.get_bool(f"{config_root}.noverify"),
            host,
        )

    def create_message(self, content: str) -> EmailMessage:
        """Build a message from rendered template text.

        The text must start with a subject line; Content-Type and MIME-version
        lines are taken as headers and every other line goes to the body.
        Raises ValueError when there is no subject line.
        """
        if not content.startswith(_SUBJECT):
            raise ValueError(
                'no subject line detected. Please make sure "Subject: my_subject_line" '
                "is included in your template"
            )

        subject = ""
        mime_version = ""
        content_type = "text/plain"
        body_lines: list[str] = []
        for line in content.split("\n"):
            if line.startswith(_SUBJECT) and not subject:
                subject = _keyword_content(line, _SUBJECT)
            elif line.startswith(_CONTENT_TYPE):
                content_type = _keyword_content(line, _CONTENT_TYPE).replace(";", "")
            elif line.startswith(_MIME_VERSION):
                mime_version = _keyword_content(line, _MIME_VERSION).replace(";", "")
            else:
                body_lines.append(line + "\n")
        body = "".join(body_lines)

        message = EmailMessage()
        recipients = [address.strip() for address in self.to_address.split(",")]
        message["To"] = ", ".join(recipients)
        message["From"] = self.from_address
        message["Subject"] = subject
        if mime_version:
            message["MIME-Version"] = mime_version

        mime_type = content_type.split()[0] if content_type.split() else "text/plain"
        maintype, _, subtype = mime_type.partition("/")
        if maintype.lower() == "text":
            message.set_content(body, subtype=subtype or "plain")
        else:
            message.set_content(
                body.encode("utf-8"),
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
            )
        return message

    def send_email(self, message: EmailMessage) -> None:
        """Deliver ``message`` through the configured SMTP server."""
        if self.port == _SMTPS_PORT:
            client = smtplib.SMTP_SSL(
                self.server, self.port, context=self.ssl_context, timeout=_DIAL_TIMEOUT
            )
        else:
            client = smtplib.SMTP(self.server, self.port, timeout=_DIAL_TIMEOUT)

        with client:
            client.ehlo()
            if self.port != _SMTPS_PORT and client.has_extn("starttls"):
                client.starttls(context=self.ssl_context)
                client.ehlo()
            if self.auth_type:
                client.user = self.username
                client.password = self.password
                if self.auth_type == "plain":
                    client.auth("PLAIN", client.auth_plain)
                else:
                    client.auth("CRAM-MD5", client.auth_cram_md5)
            client.send_message(message)

    def notify(
        self,
        status: ConsumerGroupStatus,
        event_id: str,
        start_time: datetime | None,
        state_good: bool,
    ) -> None:
        """Render the open or close template and send it as one message."""
        context = (status.cluster, status.group, event_id, str(status.status))
        template = self.template_close if state_good else self.template_open
        if template is None:
            self.log.error("failed to assemble: no template (cluster=%s group=%s id=%s status=%s)", *context)
            return

        try:
            content = execute_template(template, self.extras, status, event_id, start_time)
        except jinja2.TemplateError as err:
            self.log.error("failed to assemble: %s (cluster=%s group=%s id=%s status=%s)", err, *context)
            return

        try:
            message = self.create_message(content)
            self.send_email(message)
        except (ValueError, smtplib.SMTPException, OSError) as err:
            self.log.error("failed to send: %s (cluster=%s group=%s id=%s status=%s)", err, *context)