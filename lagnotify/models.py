"""Consumer group status records and requests exchanged with other subsystems."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Status(enum.IntEnum):
    """Evaluated health of a consumer group or partition, ordered by severity."""

    NOT_FOUND = 0
    OK = 1
    WARNING = 2
    ERROR = 3
    STOP = 4
    STALL = 5
    REWIND = 6

    def __str__(self) -> str:
        return _STATUS_STRINGS[self]

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


_STATUS_STRINGS = {
    Status.NOT_FOUND: "NOTFOUND",
    Status.OK: "OK",
    Status.WARNING: "WARN",
    Status.ERROR: "ERR",
    Status.STOP: "STOP",
    Status.STALL: "STALL",
    Status.REWIND: "REWIND",
}


@dataclass
class PartitionOffset:
    """A committed offset, when it was committed and the lag at that time."""

    offset: int = 0
    timestamp: int = 0
    lag: int = 0


@dataclass
class PartitionStatus:
    """Evaluated status of one partition consumed by a group."""

    topic: str = ""
    partition: int = 0
    owner: str = ""
    client_id: str = ""
    status: Status = Status.NOT_FOUND
    start: PartitionOffset | None = None
    end: PartitionOffset | None = None
    current_lag: int = 0
    complete: float = 0.0


@dataclass
class ConsumerGroupStatus:
    """Evaluated status of a consumer group in a cluster."""

    cluster: str = ""
    group: str = ""
    status: Status = Status.NOT_FOUND
    complete: float = 0.0
    partitions: list[PartitionStatus] = field(default_factory=list)
    total_partitions: int = 0
    maxlag: PartitionStatus | None = None
    total_lag: int = 0


class RequestType(enum.Enum):
    """Kinds of request sent to the storage subsystem."""

    FETCH_CLUSTERS = enum.auto()
    FETCH_CONSUMERS = enum.auto()


@dataclass(frozen=True)
class StorageRequest:
    """A request for a list of clusters, or of the consumer groups in one cluster."""

    request_type: RequestType
    cluster: str = ""


@dataclass(frozen=True)
class EvaluatorRequest:
    """A request to evaluate the status of one consumer group."""

    cluster: str
    group: str
    show_all: bool = False