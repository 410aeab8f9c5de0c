"""Notifier that sends consumer group status to an HTTP endpoint."""

from __future__ import annotations

import base64
import urllib.error
import urllib.request
from datetime import datetime

import jinja2

from .base import Notifier
from .config import ConfigurationError
from .models import ConsumerGroupStatus
from .templating import build_ssl_context, compile_template, execute_template

_CREDENTIAL_FIELDS = ("username", "password")


class HttpNotifier(Notifier):
    """Makes one HTTP request for each consumer group that passes the filters and threshold."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.url_open = ""
        self.url_close = ""
        self.method_open = ""
        self.method_close = ""
        self.send_close = False
        self.timeout = 0
        self._config_root = ""
        self._opener: urllib.request.OpenerDirector | None = None

    def _setting(self, field: str) -> str:
        return f"{self._config_root}.{field}"

    def configure(self, name: str, config_root: str) -> None:
        """Validate the URLs and methods and set up the HTTP client.

        Raises ConfigurationError when url-open, or url-close with send-close, is missing.
        """
        super().configure(name, config_root)
        config = self.config
        self._config_root = config_root

        self.url_open = config.get_str(f"{config_root}.url-open")
        if not self.url_open:
            raise ConfigurationError("no url-open specified")
        config.set_default(f"{config_root}.method-open", "POST")
        self.method_open = config.get_str(f"{config_root}.method-open")

        self.send_close = config.get_bool(f"{config_root}.send-close")
        if self.send_close:
            self.url_close = config.get_str(f"{config_root}.url-close")
            if not self.url_close:
                raise ConfigurationError("no url-close specified")
            config.set_default(f"{config_root}.method-close", "POST")
            self.method_close = config.get_str(f"{config_root}.method-close")

        config.set_default(f"{config_root}.timeout", 5)
        self.timeout = config.get_int(f"{config_root}.timeout")

        context = build_ssl_context(
            config.get_str(f"{config_root}.extra-ca"),
            config.get_bool(f"{config_root}.noverify"),
        )
        self._opener = urllib.request.build_opener(urllib.request.HTTPSHandler(context=context))

    def build_request(
        self,
        status: ConsumerGroupStatus,
        event_id: str,
        start_time: datetime | None,
        state_good: bool,
    ) -> urllib.request.Request:
        """Render the body and URL for the open or close notification into a request.

        Raises ValueError or jinja2.TemplateError when the request cannot be assembled.
        """
        if state_good:
            template, method, url = self.template_close, self.method_close, self.url_close
        else:
            template, method, url = self.template_open, self.method_open, self.url_open
        if template is None:
            raise ValueError("no template configured")

        body = execute_template(template, self.extras, status, event_id, start_time)
        url_to_send = execute_template(
            compile_template(url), self.extras, status, event_id, start_time
        )
        request = urllib.request.Request(url_to_send, data=body.encode("utf-8"), method=method)

        username, password = (
            self.config.get_str(self._setting(field)) for field in _CREDENTIAL_FIELDS
        )
        if username:
            credentials = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
            request.add_header("Authorization", f"Basic {credentials}")
        request.add_header("Content-Type", "application/json")
        for header, value in self.config.get_map(self._setting("headers")).items():
            request.add_header(header, value)
        return request

    def notify(
        self,
        status: ConsumerGroupStatus,
        event_id: str,
        start_time: datetime | None,
        state_good: bool,
    ) -> None:
        """Send one request; failures are logged, never raised."""
        context = (status.cluster, status.group, event_id, str(status.status))
        try:
            request = self.build_request(status, event_id, start_time, state_good)
        except (ValueError, jinja2.TemplateError) as err:
            self.log.error("failed to assemble request: %s (cluster=%s group=%s id=%s status=%s)", err, *context)
            return

        opener = self._opener or urllib.request.build_opener()
        try:
            with opener.open(request, timeout=self.timeout) as response:
                response.read()
                code = response.status
        except urllib.error.HTTPError as err:
            code = err.code
            err.close()
        except (urllib.error.URLError, OSError) as err:
            self.log.error("failed to send: %s (cluster=%s group=%s id=%s status=%s)", err, *context)
            return

        if 200 <= code <= 299:
            self.log.debug("sent (cluster=%s group=%s id=%s status=%s)", *context)
        else:
            self.log.error(
                "failed to send: response %d (cluster=%s group=%s id=%s status=%s)", code, *context
            )