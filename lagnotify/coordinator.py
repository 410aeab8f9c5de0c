"""Coordination of notifier modules.

The coordinator keeps track of every known cluster and consumer group, asks for
group evaluations when they are due, and hands the results to the configured
notifier modules.
"""

from __future__ import annotations

import logging
import random
import re
import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

import jinja2

from .base import Notifier, NullNotifier
from .config import Config, ConfigurationError
from .email_notifier import EmailNotifier
from .http_notifier import HttpNotifier
from .models import (
    ConsumerGroupStatus,
    EvaluatorRequest,
    RequestType,
    Status,
    StorageRequest,
)
from .templating import load_template

log = logging.getLogger(__name__)

# Minimum evaluation interval used when no module is configured.
_NO_MODULE_INTERVAL = 310536000
_GROUP_REFRESH_SECONDS = 60.0
_POLL_SECONDS = 0.1
_EVAL_PAUSE_SECONDS = 0.001
_DEFAULT_ZOOKEEPER_ROOT = "/burrow"

_NOTIFIER_CLASSES: dict[str, type[Notifier]] = {
    "http": HttpNotifier,
    "email": EmailNotifier,
    "null": NullNotifier,
}


class ClusterLock(Protocol):
    """A cluster-wide lock: ``acquire`` and ``release`` raise when they fail."""

    def acquire(self) -> Any: ...

    def release(self) -> Any: ...


StorageFunc = Callable[[StorageRequest], "Iterable[str] | None"]
EvaluatorFunc = Callable[[EvaluatorRequest], "ConsumerGroupStatus | None"]
LockFactory = Callable[[str], ClusterLock]
TemplateLoader = Callable[["str | Path"], jinja2.Template]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GroupState:
    """Incident and timing state of one consumer group."""

    id: str = ""
    start: datetime | None = None
    last_notify: dict[str, datetime] = field(default_factory=dict)
    last_eval: datetime | None = None
    lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )


def module_for_class(
    config: Config,
    name: str,
    class_name: str,
    group_allowlist: re.Pattern | None,
    group_denylist: re.Pattern | None,
    extras: Mapping[str, str] | None,
    template_open: jinja2.Template | None,
    template_close: jinja2.Template | None,
) -> Notifier:
    """Create an unconfigured notifier of the kind named by ``class_name``.

    Raises ConfigurationError for an unknown class name.
    """
    notifier_class = _NOTIFIER_CLASSES.get(class_name)
    if notifier_class is None:
        raise ConfigurationError(
            f"unknown notifier class-name for module {name!r}: {class_name!r}"
        )
    return notifier_class(
        config, group_allowlist, group_denylist, extras, template_open, template_close
    )


class Coordinator:
    """Manages the notifier modules and the work of deciding when to notify.

    ``storage`` answers cluster and consumer list requests, ``evaluator`` returns
    the status of one group, ``lock_factory`` builds the cluster-wide lock that
    decides which instance performs evaluations, and ``template_loader`` compiles
    a template file.
    """

    def __init__(
        self,
        config: Config,
        storage: StorageFunc,
        evaluator: EvaluatorFunc,
        lock_factory: LockFactory,
        template_loader: TemplateLoader | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.evaluator = evaluator
        self.lock_factory = lock_factory
        self.template_loader: TemplateLoader = template_loader or load_template

        self.modules: dict[str, Notifier] = {}
        self.clusters: dict[str, dict[str, GroupState]] = {}
        self.min_interval: int = _NO_MODULE_INTERVAL
        self.do_evaluations = False

        self.zookeeper_connected = True
        self.zookeeper_expired = threading.Condition()

        self._lock = threading.RLock()
        self._quit = threading.Event()
        self._executor = ThreadPoolExecutor(thread_name_prefix="lagnotify-eval")
        self._threads: list[threading.Thread] = []

    # Configuration and lifecycle

    def _pattern(self, root: str, key: str, name: str) -> re.Pattern | None:
        source = self.config.get_str(f"{root}.{key}")
        if not source:
            return None
        try:
            return re.compile(source)
        except re.error as err:
            raise ConfigurationError(
                f"failed to compile {key} for module {name!r}: {err}"
            ) from err

    def _template(self, root: str, key: str, name: str) -> jinja2.Template:
        path = self.config.get_str(f"{root}.{key}")
        try:
            return self.template_loader(path)
        except (OSError, ValueError, jinja2.TemplateError) as err:
            raise ConfigurationError(
                f"failed to compile {key} for module {name!r}: {err}"
            ) from err

    def configure(self) -> None:
        """Create and configure every notifier module listed under ``notifier``.

        Raises ConfigurationError when any module's settings are unusable.
        """
        log.info("configuring")
        config = self.config
        modules: dict[str, Notifier] = {}
        intervals: list[int] = []

        for name in config.children("notifier"):
            root = f"notifier.{name}"
            config.set_default(f"{root}.interval", 60)
            config.set_default(f"{root}.send-interval", config.get_int(f"{root}.interval"))
            config.set_default(f"{root}.threshold", 2)

            if config.is_set(f"{root}.group-whitelist") or config.is_set(f"{root}.group-blacklist"):
                raise ConfigurationError(
                    f"module {name!r}: please change configurations to allowlist and denylist"
                )

            allowlist = self._pattern(root, "group-allowlist", name)
            denylist = self._pattern(root, "group-denylist", name)
            extras = config.get_map(f"{root}.extras")

            template_open = self._template(root, "template-open", name)
            template_close = None
            if config.get_bool(f"{root}.send-close"):
                template_close = self._template(root, "template-close", name)

            module = module_for_class(
                config,
                name,
                config.get_str(f"{root}.class-name"),
                allowlist,
                denylist,
                extras,
                template_open,
                template_close,
            )
            module.configure(name, root)
            modules[name] = module
            intervals.append(config.get_int(f"{root}.interval"))

        with self._lock:
            self.modules = modules
            self.clusters = {}
            self.min_interval = min(intervals) if intervals else _NO_MODULE_INTERVAL

    def start(self) -> None:
        """Start every module, then the group refresh and evaluation management threads.

        Raises RuntimeError if a module fails to start; later modules are not started.
        """
        log.info("starting")
        for name, module in self.modules.items():
            try:
                module.start()
            except Exception as err:
                raise RuntimeError(f"Error starting notifier module: {name}: {err}") from err

        for target in (self._refresh_loop, self.manage_eval_loop):
            thread = threading.Thread(target=target, daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Stop evaluations and background work, then stop every module."""
        log.info("stopping")
        self.do_evaluations = False
        with self.zookeeper_expired:
            self._quit.set()
            self.zookeeper_expired.notify_all()
        self._executor.shutdown(wait=False, cancel_futures=True)

        for name, module in self.modules.items():
            try:
                module.stop()
            except Exception:
                log.exception("failed to stop notifier module %s", name)

    def _refresh_loop(self) -> None:
        while not self._quit.wait(_GROUP_REFRESH_SECONDS):
            self.send_cluster_request()

    # Cluster and group tracking

    def _fetch(self, request: StorageRequest) -> list[str] | None:
        try:
            reply = self.storage(request)
        except Exception:
            log.exception("storage request failed: %s", request)
            return None
        return list(reply) if isinstance(reply, (list, tuple)) else []

    def send_cluster_request(self) -> None:
        """Fetch the cluster list from storage and refresh the tracked clusters and groups."""
        clusters = self._fetch(StorageRequest(RequestType.FETCH_CLUSTERS))
        if clusters is not None:
            self.process_cluster_list(clusters)

    def process_cluster_list(self, clusters: Iterable[str]) -> None:
        """Track exactly ``clusters``, then fetch and process each one's group list."""
        wanted = list(dict.fromkeys(clusters))
        with self._lock:
            for cluster in wanted:
                self.clusters.setdefault(cluster, {})
            for cluster in [name for name in self.clusters if name not in wanted]:
                del self.clusters[cluster]

        for cluster in wanted:
            groups = self._fetch(StorageRequest(RequestType.FETCH_CONSUMERS, cluster))
            if groups is not None:
                self.process_consumer_list(cluster, groups)

    def process_consumer_list(self, cluster: str, groups: Iterable[str]) -> None:
        """Track exactly ``groups`` for a known cluster.

        New groups get a random last evaluation time within the last minimum
        interval, which spreads their evaluations out.
        """
        wanted = set(groups)
        with self._lock:
            known = self.clusters.get(cluster)
            if known is None:
                return
            now = _now()
            for group in wanted:
                if group not in known:
                    offset = random.uniform(0, self.min_interval)
                    known[group] = GroupState(last_eval=now - timedelta(seconds=offset))
            for group in [name for name in known if name not in wanted]:
                del known[group]

    def _group(self, cluster: str, group: str) -> GroupState | None:
        with self._lock:
            return self.clusters.get(cluster, {}).get(group)

    # Evaluations

    def due_evaluations(self, now: datetime | None = None) -> list[EvaluatorRequest]:
        """Return requests for every group not evaluated within the minimum interval.

        Those groups are marked as evaluated at ``now``.
        """
        now = now or _now()
        send_before = now - timedelta(seconds=self.min_interval)
        requests: list[EvaluatorRequest] = []
        with self._lock:
            for cluster, groups in self.clusters.items():
                for group, state in groups.items():
                    if state.last_eval is None or state.last_eval < send_before:
                        requests.append(EvaluatorRequest(cluster=cluster, group=group))
                        state.last_eval = now
        return requests

    def send_evaluator_requests(self) -> None:
        """Dispatch due evaluation requests for as long as evaluations are enabled."""
        while self.do_evaluations and not self._quit.is_set():
            for request in self.due_evaluations():
                log.debug("evaluating group %s in cluster %s", request.group, request.cluster)
                try:
                    self._executor.submit(self._evaluate, request)
                except RuntimeError:
                    return
            self._quit.wait(_EVAL_PAUSE_SECONDS)

    def _evaluate(self, request: EvaluatorRequest) -> None:
        try:
            self.handle_response(self.evaluator(request))
        except Exception:
            log.exception(
                "evaluation failed for group %s in cluster %s", request.group, request.cluster
            )

    def handle_response(self, response: ConsumerGroupStatus | None) -> None:
        """Pass an evaluation result to the modules unless the group was not found."""
        if response is None or response.status == Status.NOT_FOUND:
            return
        self.check_and_send_response_to_modules(response)

    # Notifications

    def check_and_send_response_to_modules(self, response: ConsumerGroupStatus) -> None:
        """Update the group's incident and notify every module that accepts the group."""
        state = self._group(response.cluster, response.group)
        if state is None:
            return

        with state.lock:
            if state.start is None and response.status > Status.OK:
                state.id = str(uuid.uuid4())
                state.start = _now()

            for module in list(self.modules.values()):
                allowlist = module.group_allowlist
                denylist = module.group_denylist
                if allowlist is not None and not allowlist.search(response.group):
                    continue
                if denylist is not None and denylist.search(response.group):
                    continue
                if module.accept_consumer_group(response):
                    self.notify_module(module, response, state.start, state.id)

            if response.status == Status.OK:
                state.id = ""
                state.start = None

    def notify_module(
        self,
        module: Notifier,
        status: ConsumerGroupStatus,
        start_time: datetime | None,
        event_id: str,
    ) -> None:
        """Send one notification to ``module`` if its threshold and timing rules allow."""
        state = self._group(status.cluster, status.group)
        if state is None:
            return

        name = module.name
        root = f"notifier.{name}"
        config = self.config
        with state.lock:
            # Closed incidents are sent regardless of the module's threshold.
            if (
                start_time is not None
                and status.status == Status.OK
                and config.get_bool(f"{root}.send-close")
            ):
                module.notify(status, event_id, start_time, True)
                state.last_notify.pop(name, None)
                return

            if int(status.status) < config.get_int(f"{root}.threshold"):
                return

            last = state.last_notify.get(name)
            if last is not None and config.get_bool(f"{root}.send-once"):
                return

            now = _now()
            interval = timedelta(seconds=config.get_int(f"{root}.send-interval"))
            if last is None or now - last > interval:
                module.notify(status, event_id, start_time, False)
                state.last_notify[name] = now

    # Leadership

    def manage_eval_loop(self) -> None:
        """Perform evaluations while this instance holds the cluster-wide notifier lock.

        Evaluations stop when the session expires, and the lock is released and
        retaken once the connection is back. Raises RuntimeError if the lock
        cannot be released.
        """
        root = self.config.get_str("zookeeper.root-path") or _DEFAULT_ZOOKEEPER_ROOT
        lock = self.lock_factory(f"{root}/notifier")

        while not self._quit.wait(_POLL_SECONDS):
            try:
                lock.acquire()
            except Exception as err:
                log.warning("failed to get cluster lock: %s", err)
                continue

            with self.zookeeper_expired:
                self.do_evaluations = True
                threading.Thread(target=self.send_evaluator_requests, daemon=True).start()
                log.info("starting evaluations")
                if not self._quit.is_set():
                    self.zookeeper_expired.wait()
                self.do_evaluations = False
            log.info("stopping evaluations")

            while not self.zookeeper_connected and not self._quit.wait(_POLL_SECONDS):
                pass
            if not self.zookeeper_connected:
                return
            try:
                lock.release()
            except Exception as err:
                raise RuntimeError(
                    "unable to release cluster lock after session expiration"
                ) from err