from dataclasses import dataclass, field
from enum import Enum

# Service indication names for the call list feed
SI_NAME_COMBINED = "CallList"
SI_NAME_CFS = "Meta_Subscriber_CallLists"


class FeatureState(Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"

    @property
    def is_enabled(self) -> bool:
        return self is FeatureState.ENABLED


@dataclass(frozen=True)
class ClassOfService:
    call_log_enabled: bool = False
    network_call_history_allowed: bool = False
    ich_allowed: bool = True
    bcm_subscribed: bool = False

    @classmethod
    def from_payload(cls, data: dict) -> "ClassOfService":
        return cls(
            call_log_enabled=bool(data.get("callLogEnabled", False)),
            network_call_history_allowed=bool(data.get("networkCallHistoryAllowed", False)),
            ich_allowed=bool(data.get("ichAllowed", True)),
            bcm_subscribed=bool(data.get("bcmSubscribed", False)),
        )

    @property
    def history_allowed(self) -> bool:
        return self.call_log_enabled and self.network_call_history_allowed

    @property
    def si_name(self) -> str:
        # BCM subscribers without ICH only get the CFS call lists
        if self.bcm_subscribed and not self.ich_allowed:
            return SI_NAME_CFS
        return SI_NAME_COMBINED


@dataclass
class CallState:
    """Live call-state snapshot fed by call-state events.

    Used by the parser to spot server records for calls still in progress.
    """

    on_the_phone: bool = False
    peers: list[str] = field(default_factory=list)

    def is_on_the_phone(self) -> bool:
        return self.on_the_phone

    def active_peer_addresses(self) -> list[str]:
        return list(self.peers) if self.on_the_phone else []

    def update(self, on_the_phone: bool, peers: list[str] | None = None) -> bool:
        """Apply a new snapshot; returns True when a call just ended."""
        call_ended = self.on_the_phone and not on_the_phone
        self.on_the_phone = on_the_phone
        self.peers = list(peers or []) if on_the_phone else []
        return call_ended
