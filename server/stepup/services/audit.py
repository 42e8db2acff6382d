from __future__ import annotations

import hashlib
import heapq
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Iterator

from fastapi import Request
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ..models import AuditChainHead, AuditEvent, AuditEventArchive
from ..schemas import AuditAction, AuditMetadata
from .db_utils import dialect_insert, transaction
from .time_utils import Clock, as_utc, now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    ip_address: str | None = None
    user_agent: str | None = None


def client_ip(request: Request | None) -> str | None:
    if not request:
        return None
    xff = request.headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",")[0].strip()
    xri = request.headers.get("X-Real-IP")
    if xri:
        return xri.strip()
    return request.client.host if request.client else None


def user_agent(request: Request | None) -> str | None:
    if not request:
        return None
    ua = request.headers.get("User-Agent")
    return (ua[:500] if ua else None)


def request_context(request: Request | None) -> RequestContext:
    return RequestContext(ip_address=client_ip(request), user_agent=user_agent(request))


def truncate(s: Any, max_len: int = 500) -> str:
    t = "" if s is None else str(s)
    if len(t) > max_len:
        return t[: max_len - 3] + "..."
    return t


def _ts(dt: datetime) -> str:
    # Stored without tz on sqlite, with tz on postgres; hash the UTC wall time either way.
    return as_utc(dt).replace(tzinfo=None).isoformat(timespec="microseconds")


def _sid(v: uuid.UUID | str | None) -> str | None:
    return str(v) if v is not None else None


def compute_entry_hash(ev: AuditEvent | AuditEventArchive, previous_hash: str | None) -> str:
    payload = {
        "id": _sid(ev.id),
        "sequence": int(ev.sequence),
        "timestamp": _ts(ev.created_at),
        "user_id": _sid(ev.user_id),
        "actor_user_id": _sid(ev.actor_user_id),
        "action": ev.action,
        "success": bool(ev.success),
        "ip_address": ev.ip_address,
        "user_agent": ev.user_agent,
        "meta": ev.meta or {},
    }
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256((body + (previous_hash or "")).encode("utf-8")).hexdigest()


@dataclass
class ChainVerification:
    valid: bool
    checked: int
    first_broken_sequence: int | None = None
    first_broken_id: str | None = None
    reason: str | None = None  # hash_mismatch|link_mismatch|sequence_gap|head_mismatch|duplicate_sequence


class AuditLog:
    """Append-only, globally hash-chained audit log.

    ``append`` participates in the caller's transaction so an event is durable
    exactly when the action it records is.
    """

    def __init__(self, db: Session, *, clock: Clock = now_utc, max_retries: int = 5):
        self.db = db
        self.clock = clock
        self.max_retries = max(1, int(max_retries))

    def _head(self) -> AuditChainHead:
        """Return the chain head row, row-locked for the rest of the caller's transaction."""
        q = (
            select(AuditChainHead)
            .where(AuditChainHead.id == 1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        head = self.db.execute(q).scalar_one_or_none()
        if head is not None:
            return head
        insert = dialect_insert(self.db)
        self.db.execute(
            insert(AuditChainHead)
            .values(id=1, sequence=0, last_hash=None, updated_at=self.clock())
            .on_conflict_do_nothing(index_elements=["id"])
        )
        return self.db.execute(q).scalar_one()

    def append(
        self,
        action: AuditAction | str,
        *,
        user_id: uuid.UUID | None = None,
        actor_user_id: uuid.UUID | None = None,
        success: bool = True,
        context: RequestContext | None = None,
        metadata: AuditMetadata | None = None,
    ) -> AuditEvent:
        """Link a new entry to the global head inside the caller's transaction.

        The head row stays locked until the caller commits, which serialises
        appenders across threads and processes. Databases without row locks
        (SQLite) fall back to the compare-and-swap below.
        """
        ctx = context or RequestContext()
        meta = (metadata or AuditMetadata()).to_json()

        for _ in range(self.max_retries):
            head = self._head()
            seen_seq = int(head.sequence or 0)
            ev = AuditEvent(
                id=uuid.uuid4(),
                sequence=seen_seq + 1,
                created_at=self.clock(),
                user_id=user_id,
                actor_user_id=actor_user_id,
                action=AuditAction(action).value,
                success=bool(success),
                ip_address=truncate(ctx.ip_address, 64) if ctx.ip_address else None,
                user_agent=truncate(ctx.user_agent) if ctx.user_agent else None,
                meta=meta,
                previous_hash=head.last_hash,
            )
            ev.entry_hash = compute_entry_hash(ev, head.last_hash)

            swapped = self.db.execute(
                update(AuditChainHead)
                .where(AuditChainHead.id == 1, AuditChainHead.sequence == seen_seq)
                .values(sequence=ev.sequence, last_hash=ev.entry_hash, updated_at=ev.created_at)
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount == 1:
                self.db.add(ev)
                self.db.flush()
                return ev
            logger.info("audit head moved under us at sequence %s, retrying", seen_seq)

        raise RuntimeError("audit append failed: chain head contention")

    # Reads

    def _iter_rows(self, model, start: int, end: int) -> Iterator[Any]:
        q = (
            select(model)
            .where(model.sequence >= start, model.sequence <= end)
            .order_by(model.sequence)
            .execution_options(yield_per=500)
        )
        yield from self.db.execute(q).scalars()

    def _head_state(self) -> tuple[int, str | None]:
        row = self.db.execute(
            select(AuditChainHead.sequence, AuditChainHead.last_hash).where(AuditChainHead.id == 1)
        ).one_or_none()
        if row is None:
            return 0, None
        return int(row.sequence or 0), row.last_hash

    def _entry_hash_at(self, sequence: int) -> str | None:
        for model in (AuditEvent, AuditEventArchive):
            h = self.db.execute(select(model.entry_hash).where(model.sequence == sequence)).scalar_one_or_none()
            if h is not None:
                return h
        return None

    def _find_by_hash(self, entry_hash: str | None) -> Any | None:
        if not entry_hash:
            return None
        for model in (AuditEvent, AuditEventArchive):
            row = self.db.execute(select(model).where(model.entry_hash == entry_hash).limit(1)).scalar_one_or_none()
            if row is not None:
                return row
        return None

    def verify_chain_integrity(
        self,
        *,
        start_sequence: int | None = None,
        end_sequence: int | None = None,
        include_archive: bool = True,
    ) -> ChainVerification:
        """Recompute every hash in range and check each link to its predecessor.

        The range is clamped to the chain head read up front, so entries
        appended while the check runs are left for the next run. A run that
        reaches the head must also end on the head's hash, which catches
        entries deleted from the tail. With ``include_archive=False`` the
        check starts after the newest archived entry.
        """
        head_seq, head_hash = self._head_state()
        lo = max(1, int(start_sequence or 1))
        if not include_archive:
            archived_max = self.db.execute(select(func.max(AuditEventArchive.sequence))).scalar_one()
            lo = max(lo, int(archived_max or 0) + 1)
        hi = head_seq if end_sequence is None else min(int(end_sequence), head_seq)
        if hi < lo:
            return ChainVerification(valid=True, checked=0)

        prev_hash: str | None = None
        if lo > 1:
            prev_hash = self._entry_hash_at(lo - 1)
            if prev_hash is None:
                return self._missing(lo - 1, 0, None)

        sources: list[Iterable[Any]] = [self._iter_rows(AuditEvent, lo, hi)]
        if include_archive:
            sources.append(self._iter_rows(AuditEventArchive, lo, hi))
        rows = heapq.merge(*sources, key=lambda r: int(r.sequence))

        expected = lo
        checked = 0
        last_row = None
        claimed_ids: set[Any] = set()
        displaced: list[Any] = []
        for row in rows:
            if row.id in claimed_ids:
                continue
            seq = int(row.sequence)
            if seq < expected:
                displaced.append(row)
                continue
            if seq > expected:
                # Entry ``expected`` is absent from its slot; this row still names its hash.
                return self._missing(expected, checked, row.previous_hash)
            if compute_entry_hash(row, row.previous_hash) != row.entry_hash:
                # A renumbered entry can share the slot with the genuine one.
                holder = self._slot_holder(seq, prev_hash, exclude_id=row.id)
                if holder is None:
                    return self._broken(row, checked, "hash_mismatch")
                displaced.append(row)
                claimed_ids.add(holder.id)
                row = holder
            elif row.previous_hash != prev_hash:
                return self._broken(row, checked, "link_mismatch")

            checked += 1
            expected += 1
            prev_hash = row.entry_hash
            last_row = row

        if expected <= hi:
            return self._missing(expected, checked, head_hash if expected == head_seq else None)
        if hi == head_seq and prev_hash != head_hash:
            return self._broken(last_row, checked - 1, "head_mismatch")
        if displaced:
            return self._broken(displaced[0], checked, "duplicate_sequence")
        return ChainVerification(valid=True, checked=checked)

    def _slot_holder(self, sequence: int, previous_hash: str | None, *, exclude_id: Any) -> Any | None:
        for model in (AuditEvent, AuditEventArchive):
            candidates = self.db.execute(
                select(model).where(model.sequence == sequence, model.id != exclude_id)
            ).scalars()
            for row in candidates:
                if row.previous_hash == previous_hash and compute_entry_hash(row, row.previous_hash) == row.entry_hash:
                    return row
        return None

    def _missing(self, sequence: int, checked: int, expected_hash: str | None) -> ChainVerification:
        """Entry ``sequence`` is not where it should be: either moved (renumbered) or deleted."""
        moved = self._find_by_hash(expected_hash)
        if moved is not None:
            return self._broken(moved, checked, "hash_mismatch", sequence=sequence)
        logger.warning("audit chain broken at sequence %s (sequence_gap)", sequence)
        return ChainVerification(valid=False, checked=checked, first_broken_sequence=sequence, reason="sequence_gap")

    def _broken(self, row, checked: int, reason: str, *, sequence: int | None = None) -> ChainVerification:
        seq = int(row.sequence) if sequence is None else sequence
        logger.warning("audit chain broken at sequence %s (%s)", seq, reason)
        return ChainVerification(
            valid=False,
            checked=checked,
            first_broken_sequence=seq,
            first_broken_id=str(row.id),
            reason=reason,
        )

    def list_events(
        self,
        *,
        user_id: uuid.UUID | None = None,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        q = select(AuditEvent).order_by(AuditEvent.sequence.desc()).limit(max(1, min(int(limit), 1000)))
        if user_id is not None:
            q = q.where(AuditEvent.user_id == user_id)
        if action:
            q = q.where(AuditEvent.action == action)
        if since is not None:
            q = q.where(AuditEvent.created_at >= since)
        return list(self.db.execute(q).scalars().all())

    def statistics(self) -> dict[str, Any]:
        live, oldest, newest = self.db.execute(
            select(func.count(AuditEvent.id), func.min(AuditEvent.created_at), func.max(AuditEvent.created_at))
        ).one()
        archived, oldest_archived = self.db.execute(
            select(func.count(AuditEventArchive.id), func.min(AuditEventArchive.created_at))
        ).one()
        head = self.db.execute(select(AuditChainHead.sequence).where(AuditChainHead.id == 1)).scalar_one_or_none()
        return {
            "live_entries": int(live or 0),
            "archived_entries": int(archived or 0),
            "head_sequence": int(head or 0),
            "oldest_entry_at": as_utc(oldest_archived or oldest).isoformat() if (oldest_archived or oldest) else None,
            "newest_entry_at": as_utc(newest).isoformat() if newest else None,
        }

    # Archival

    def archive_older_than(self, cutoff: datetime, *, batch_size: int = 1000) -> int:
        """Move entries older than ``cutoff`` to the archive table, hashes unchanged.

        Commits once per batch.
        """
        moved = 0
        while True:
            batch = list(
                self.db.execute(
                    select(AuditEvent)
                    .where(AuditEvent.created_at < cutoff)
                    .order_by(AuditEvent.sequence)
                    .limit(max(1, int(batch_size)))
                ).scalars()
            )
            if not batch:
                break
            archived_at = self.clock()
            with transaction(self.db):
                for ev in batch:
                    self.db.add(
                        AuditEventArchive(
                            id=ev.id,
                            sequence=ev.sequence,
                            created_at=ev.created_at,
                            user_id=ev.user_id,
                            actor_user_id=ev.actor_user_id,
                            action=ev.action,
                            success=ev.success,
                            ip_address=ev.ip_address,
                            user_agent=ev.user_agent,
                            meta=dict(ev.meta or {}),
                            previous_hash=ev.previous_hash,
                            entry_hash=ev.entry_hash,
                            archived_at=archived_at,
                        )
                    )
                self.db.flush()
                self.db.execute(
                    delete(AuditEvent)
                    .where(AuditEvent.id.in_([ev.id for ev in batch]))
                    .execution_options(synchronize_session=False)
                )
            for ev in batch:
                self.db.expunge(ev)
            moved += len(batch)
        if moved:
            logger.info("archived %s audit entries older than %s", moved, cutoff.isoformat())
        return moved
