"""Common behaviour of notifier modules, and a notifier that sends nothing."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime

import jinja2

from .config import Config
from .models import ConsumerGroupStatus


class Notifier(ABC):
    """A way of sending consumer group status to an outside system.

    The group allowlist and denylist, extras and templates are shared by every kind
    of notifier; subclasses supply how a notification is sent.
    """

    def __init__(
        self,
        config: Config,
        group_allowlist: re.Pattern | None = None,
        group_denylist: re.Pattern | None = None,
        extras: Mapping[str, str] | None = None,
        template_open: jinja2.Template | None = None,
        template_close: jinja2.Template | None = None,
    ) -> None:
        self.config = config
        self.group_allowlist = group_allowlist
        self.group_denylist = group_denylist
        self.extras: dict[str, str] = dict(extras or {})
        self.template_open = template_open
        self.template_close = template_close
        self.name = ""
        self.log = logging.getLogger("lagnotify.notifier")

    def configure(self, name: str, config_root: str) -> None:
        """Set the module name; subclasses also validate their settings under ``config_root``."""
        self.name = name
        self.log = logging.getLogger(f"lagnotify.notifier.{name}")

    def start(self) -> None:
        """Start the module. Nothing is needed by default."""

    def stop(self) -> None:
        """Stop the module. Nothing is needed by default."""

    def accept_consumer_group(self, status: ConsumerGroupStatus) -> bool:
        """Return whether this module wants to notify for ``status``; always true by default."""
        return True

    @abstractmethod
    def notify(
        self,
        status: ConsumerGroupStatus,
        event_id: str,
        start_time: datetime | None,
        state_good: bool,
    ) -> None:
        """Send one notification; ``state_good`` selects the close message over the open one."""


class NullNotifier(Notifier):
    """A notifier that sends nothing and records which of its methods were called."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.called_configure = False
        self.called_start = False
        self.called_stop = False
        self.called_notify = False
        self.called_accept_consumer_group = False

    def configure(self, name: str, config_root: str) -> None:
        super().configure(name, config_root)
        self.called_configure = True

    def start(self) -> None:
        self.called_start = True

    def stop(self) -> None:
        self.called_stop = True

    def accept_consumer_group(self, status: ConsumerGroupStatus) -> bool:
        self.called_accept_consumer_group = True
        return True

    def notify(
        self,
        status: ConsumerGroupStatus,
        event_id: str,
        start_time: datetime | None,
        state_good: bool,
    ) -> None:
        self.called_notify = True