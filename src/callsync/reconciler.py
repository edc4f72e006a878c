"""Merge freshly fetched server records into the local call history.

Local records are the ones written on this client since the last refresh;
server records are this cycle's new entries from the backend. For every pair
that describes the same call exactly one survives:

* outgoing and conference calls keep the local copy (it knows every peer);
* other incoming calls keep the server copy;
* a locally missed call with no server entry yet is kept and remembered in the
  unresolved set, since the caller may still be leaving a voicemail.

Click-to-dial calls are reported by the backend as both an incoming and an
outgoing leg; only the outgoing one is written.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Protocol

from callsync.names import NameResolver
from callsync.numbers import NumberNormalizer, log_hash, numbers_match
from callsync.records import CallRecord, Direction, EndReason, PeerRecord, Provenance, by_start_time

logger = logging.getLogger(__name__)

CLICK_TO_DIAL_WINDOW = timedelta(seconds=2)

# Log every record only when a pass is this small
VERBOSE_LOG_LIMIT = 10


def same_record(a: CallRecord, b: CallRecord) -> bool:
    """Same in-memory record, or two loads of the same store row."""
    return a is b or (a.record_id is not None and a.record_id == b.record_id)


class HistoryStore(Protocol):
    async def find_records_added_after(self, timestamp) -> list[CallRecord]: ...

    async def write(self, record: CallRecord, peer_address: str) -> None: ...

    async def delete(self, record: CallRecord) -> None: ...

    async def fire_history_changed(self) -> None: ...


@dataclass
class ReconcileResult:
    written: list[CallRecord] = field(default_factory=list)
    deleted: list[CallRecord] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.written or self.deleted)


class Reconciler:
    def __init__(
        self,
        store: HistoryStore,
        names: NameResolver,
        normalizer: NumberNormalizer,
        ctd_window: timedelta = CLICK_TO_DIAL_WINDOW,
    ):
        self.store = store
        self.names = names
        self.normalizer = normalizer
        self.ctd_window = ctd_window
        # Local missed calls still waiting for a server entry. Process lifetime only.
        self.unresolved: list[CallRecord] = []

    def _number(self, peer: PeerRecord) -> str:
        return peer.normalized_number or self.normalizer.normalize(peer.address)

    def _mark_unresolved(self, record: CallRecord) -> None:
        # A retried cycle reloads the same store row as a new object; keep the newest
        self.unresolved = [r for r in self.unresolved if not same_record(r, record)]
        self.unresolved.append(record)

    def _mark_resolved(self, record: CallRecord) -> None:
        self.unresolved = [r for r in self.unresolved if not same_record(r, record)]

    def find_match(
        self, server_records: list[CallRecord], peer: PeerRecord, direction: Direction,
    ) -> Optional[CallRecord]:
        """First server record with the same direction whose number matches ``peer``.

        Times are not compared: client and server clocks may disagree.
        """
        peer_number = self._number(peer)
        for candidate in server_records:
            if candidate.direction != direction or not candidate.peers:
                continue
            if numbers_match(peer_number, self._number(candidate.peers[0])):
                return candidate
        return None

    async def reconcile(
        self,
        server_records: list[CallRecord],
        local_records: list[CallRecord],
        first_run: bool,
    ) -> ReconcileResult:
        result = ReconcileResult()
        self.names.reset()

        for record in server_records:
            record.provenance = Provenance.SERVER
        local = list(local_records)
        for record in local:
            record.provenance = Provenance.LOCAL
        # Re-examine missed calls that were unresolved on earlier cycles
        for record in self.unresolved:
            if not any(same_record(r, record) for r in local):
                local.append(record)

        verbose = (len(server_records) + len(local)) < VERBOSE_LOG_LIMIT
        logger.debug(
            "Reconciling %d server and %d local records (first_run=%s)",
            len(server_records), len(local), first_run,
        )

        server = by_start_time(server_records)
        local = by_start_time(local)
        to_write: list[CallRecord] = []
        inherited_attention: list[CallRecord] = []

        for record in local:
            if verbose:
                logger.debug("Examining local record %r", record)
            keep = await self._reconcile_local(record, server, to_write, inherited_attention, first_run)
            if not keep:
                logger.debug("Removing local record %r", record)
                await self.store.delete(record)
                result.deleted.append(record)

        logger.debug("Unresolved missed calls: %d", len(self.unresolved))

        # Server records merged with a local missed call left the pool during the
        # local pass; they are still written
        server = by_start_time(server + inherited_attention)
        self.remove_click_to_dial_duplicates(server)

        logger.debug("Adding %d new server records", len(server))
        for record in server:
            await self._finalize(record, first_run, verbose,
                                 keep_attention=any(r is record for r in inherited_attention))
            to_write.append(record)

        to_write = by_start_time(to_write)
        logger.debug("Writing %d records", len(to_write))
        for record in to_write:
            peer = record.first_peer
            await self.store.write(record, peer.address if peer else "")
            record.provenance = None
            result.written.append(record)

        if result.changed:
            await self.store.fire_history_changed()
        return result

    async def _reconcile_local(
        self,
        record: CallRecord,
        server: list[CallRecord],
        to_write: list[CallRecord],
        inherited_attention: list[CallRecord],
        first_run: bool,
    ) -> bool:
        """Handle one local record; returns True if the local copy stays in the store untouched."""
        if record.is_conference or record.direction == Direction.OUT:
            # Only the first peer of a conference can be inbound; merged-in
            # incoming calls don't show up in the server history as part of it.
            for index, peer in enumerate(record.peers):
                direction = record.direction if index == 0 else Direction.OUT
                match = self.find_match(server, peer, direction)
                if match is not None:
                    server.remove(match)
            # Deleted and re-written so ordering in the store follows start time
            to_write.append(record)
            return False

        if not record.is_missed:
            self._mark_resolved(record)
            return False

        peer = record.peers[0]
        match = self.find_match(server, peer, Direction.IN)
        if match is not None:
            logger.debug("Server record found, copying local attention=%s", record.attention)
            match.attention = record.attention
            server.remove(match)
            inherited_attention.append(match)
            self._mark_resolved(record)
            return False

        # No server entry yet: the caller may still be talking to voicemail
        if not first_run:
            self._mark_unresolved(record)

        if record.end_reason == EndReason.NORMAL_CLEARING:
            # Answered on another client. A zero-length outgoing server entry
            # means this was the far leg of a click-to-dial call.
            outgoing = self.find_match(server, peer, Direction.OUT)
            if outgoing is not None and outgoing.start_time == outgoing.end_time:
                logger.debug("Removing local incoming record for click-to-dial call")
                self._mark_resolved(record)
                return False
        return True

    def remove_click_to_dial_duplicates(self, server: list[CallRecord]) -> None:
        """Drop the incoming leg of IN/OUT pairs with the same number ending together."""
        incoming = [r for r in server if r.direction == Direction.IN]
        outgoing = [r for r in server if r.direction == Direction.OUT]

        for inbound in incoming:
            for outbound in outgoing:
                if abs(inbound.end_time - outbound.end_time) > self.ctd_window:
                    continue
                in_number = self._number(inbound.peers[0])
                if in_number == self._number(outbound.peers[0]):
                    logger.info(
                        "Removing incoming record from %s ending at %s, click-to-dial duplicate",
                        log_hash(in_number), inbound.end_time.isoformat(),
                    )
                    server.remove(inbound)
                    break

    async def _finalize(self, record: CallRecord, first_run: bool, verbose: bool, keep_attention: bool) -> None:
        peer = record.peers[0]
        if peer.display_name is None:
            if verbose:
                logger.debug("Resolving name for %s", log_hash(peer.address))
            name = await self.names.resolve(peer.address)
            peer.display_name = name or peer.address
        elif verbose:
            logger.debug("Using known display name %s", log_hash(peer.display_name))

        if keep_attention:
            # The local missed call may have matched a call the server saw answered
            record.attention = record.attention and record.is_missed
        else:
            # First run: no local history to compare against, so nothing is flagged new
            record.attention = (not first_run) and record.is_missed
