"""Message templates for notifications and the helper functions they can call."""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
import ssl
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

import jinja2

from .config import ConfigurationError
from .models import ConsumerGroupStatus, PartitionStatus, Status

log = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, enum.Enum):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return value


def json_encoder(value: Any) -> str:
    """Encode a value as compact JSON; return an empty string if it cannot be encoded."""
    try:
        return json.dumps(_jsonable(value), separators=(",", ":"))
    except (TypeError, ValueError):
        return ""


def topics_by_status(partitions: Iterable[PartitionStatus]) -> dict[str, list[str]]:
    """Group the distinct topics of ``partitions`` by the short name of their status."""
    grouped: dict[str, dict[str, None]] = {}
    for partition in partitions:
        grouped.setdefault(str(partition.status), {})[partition.topic] = None
    return {status: list(topics) for status, topics in grouped.items()}


_COUNT_KEYS = {
    Status.WARNING: "warn",
    Status.STOP: "stop",
    Status.STALL: "stall",
    Status.REWIND: "rewind",
}


def partition_counts(partitions: Iterable[PartitionStatus]) -> dict[str, int]:
    """Count partitions with problems: warn, stop, stall, rewind and unknown."""
    counts = {"warn": 0, "stop": 0, "stall": 0, "rewind": 0, "unknown": 0}
    for partition in partitions:
        if partition.status == Status.OK:
            continue
        counts[_COUNT_KEYS.get(partition.status, "unknown")] += 1
    return counts


def add(a: int, b: int) -> int:
    return a + b


def minus(a: int, b: int) -> int:
    return a - b


def multiply(a: int, b: int) -> int:
    return a * b


def divide(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    quotient = abs(a) // abs(b)
    return quotient if (a >= 0) == (b >= 0) else -quotient


def max_lag(partition: PartitionStatus | None) -> int:
    """Return the current lag of ``partition``, or 0 when there is none."""
    return 0 if partition is None else partition.current_lag


def format_timestamp(timestamp: int, format_string: str) -> str:
    """Format a millisecond Unix timestamp in local time with strftime directives."""
    seconds, millis = divmod(int(timestamp), 1000)
    moment = datetime.fromtimestamp(seconds) + timedelta(milliseconds=millis)
    return moment.strftime(format_string)


_ENVIRONMENT = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)
_ENVIRONMENT.globals.update(
    jsonencoder=json_encoder,
    topicsbystatus=topics_by_status,
    partitioncounts=partition_counts,
    add=add,
    minus=minus,
    multiply=multiply,
    divide=divide,
    maxlag=max_lag,
    formattimestamp=format_timestamp,
)


def compile_template(source: str) -> jinja2.Template:
    """Compile template text with the notification helpers available."""
    return _ENVIRONMENT.from_string(source)


def load_template(path: str | Path) -> jinja2.Template:
    """Read and compile the template stored in the file at ``path``."""
    return compile_template(Path(path).read_text(encoding="utf-8"))


def execute_template(
    template: jinja2.Template,
    extras: Mapping[str, str] | None,
    status: ConsumerGroupStatus,
    event_id: str,
    start_time: datetime | None,
) -> str:
    """Render ``template`` for a consumer group status and incident."""
    return template.render(
        Cluster=status.cluster,
        Group=status.group,
        ID=event_id,
        Start=start_time,
        Extras=dict(extras or {}),
        Result=status,
    )


class _ClientContext(ssl.SSLContext):
    """Client TLS context that verifies against a fixed server name when none is given."""

    server_name: str | None = None

    def wrap_socket(self, sock, *args, server_hostname=None, **kwargs):
        return super().wrap_socket(
            sock, *args, server_hostname=server_hostname or self.server_name, **kwargs
        )

    def wrap_bio(self, incoming, outgoing, *args, server_hostname=None, **kwargs):
        return super().wrap_bio(
            incoming, outgoing, *args, server_hostname=server_hostname or self.server_name, **kwargs
        )


def build_ssl_context(
    extra_ca_file: str | None, no_verify: bool, server_name: str | None = None
) -> ssl.SSLContext:
    """Build a client TLS context trusting the system roots plus an optional CA file.

    Raises ConfigurationError if the extra CA file cannot be read.
    """
    context = _ClientContext(ssl.PROTOCOL_TLS_CLIENT)
    context.server_name = server_name or None
    try:
        context.load_default_certs(ssl.Purpose.SERVER_AUTH)
    except ssl.SSLError:
        log.warning("unable to load system certs, using empty cert pool instead")

    if no_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    elif extra_ca_file:
        try:
            context.load_verify_locations(cafile=extra_ca_file)
        except ssl.SSLError:
            log.warning("no certs appended, using system certs only")
        except OSError as err:
            raise ConfigurationError(
                f"failed to append {extra_ca_file!r} to root CAs: {err}"
            ) from err
    return context