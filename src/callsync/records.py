from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Direction(Enum):
    IN = "in"
    OUT = "out"


class EndReason(Enum):
    NORMAL_CLEARING = "normal_clearing"


class Provenance(Enum):
    LOCAL = "local"
    SERVER = "server"


@dataclass
class PeerRecord:
    address: str
    normalized_number: str = ""
    display_name: Optional[str] = None


@dataclass(eq=False)
class CallRecord:
    """One entry of call history.

    Compared by identity: the reconciler tracks specific in-memory records
    (e.g. unresolved missed calls) across cycles.
    """

    direction: Direction
    start_time: datetime
    end_time: datetime
    peers: list[PeerRecord] = field(default_factory=list)
    end_reason: Optional[EndReason] = None
    attention: bool = False
    provenance: Optional[Provenance] = None

    # Store metadata
    record_id: Optional[int] = None
    added_at: Optional[datetime] = None

    @property
    def is_missed(self) -> bool:
        return self.direction == Direction.IN and self.start_time == self.end_time

    @property
    def is_conference(self) -> bool:
        return len(self.peers) > 1

    @property
    def first_peer(self) -> Optional[PeerRecord]:
        return self.peers[0] if self.peers else None

    def __repr__(self) -> str:
        return (
            f"CallRecord({self.direction.value}, {self.start_time.isoformat()}"
            f"..{self.end_time.isoformat()}, peers={len(self.peers)}, "
            f"attention={self.attention}, provenance="
            f"{self.provenance.value if self.provenance else None})"
        )


def by_start_time(records: list[CallRecord]) -> list[CallRecord]:
    """Stable ascending sort by start time."""
    return sorted(records, key=lambda r: r.start_time)
