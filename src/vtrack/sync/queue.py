"""
Persisted, priority-tiered queue of ChangeRecords awaiting transmission.

Ordering is FIFO within a tier and the ``high`` tier drains before
``normal``. A record leaves the queue through acknowledge() after the
remote side accepted it, through discard() when a conflict or coalescing
made it obsolete, or through park() when it can never succeed.

At most one *pending* record exists per (entity_type, entity_id): enqueue()
and requeue() fold a new record into the existing one instead of appending.
Records handed out by drain() are ``in_flight`` until acknowledged or
requeued, so a mutation made while a batch is on the wire starts a new
pending record rather than rewriting the one being sent.

Every method is a single read-modify-write inside one Session, which is the
only serialization the engine needs on a single-threaded event loop.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from vtrack.config import MAX_PUSH_BATCH_SIZE
from vtrack.models.sync import (
    PRIORITY_RANK,
    ChangeRecord,
    ChangeStatus,
    Operation,
    Priority,
)

logger = logging.getLogger(__name__)


def coalesce_operations(older: str, newer: str) -> Optional[str]:
    """
    Fold two unsent operations on one entity into one.

    Returns None when the pair cancels out (create then delete): the entity
    never reached the remote side, so nothing needs to be sent.
    """
    if older == Operation.CREATE.value:
        if newer == Operation.DELETE.value:
            return None
        return Operation.CREATE.value
    if older == Operation.DELETE.value and newer != Operation.DELETE.value:
        # deleted then re-created locally: the remote row still exists
        return Operation.UPDATE.value
    return newer


def _higher_priority(a: str, b: str) -> str:
    return a if PRIORITY_RANK.get(a, 1) <= PRIORITY_RANK.get(b, 1) else b


class SyncQueue:
    """Queue operations over the ChangeRecord table."""

    def __init__(self, engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ─── Producer side ────────────────────────────────────────────────────────

    def enqueue(self, record: ChangeRecord, session: Optional[Session] = None) -> Optional[str]:
        """
        Add a record, coalescing with an unsent pending record for the same entity.

        Args:
            record: A fresh ChangeRecord (not yet persisted).
            session: Open session to join; the caller commits. When omitted a
                session is opened and committed here.

        Returns:
            The id of the record now pending for that entity, or None when the
            new record cancelled the pending one out.
        """
        if session is None:
            with self._session() as s:
                result = self._enqueue(s, record)
                s.commit()
                return result
        return self._enqueue(session, record)

    def _enqueue(self, s: Session, record: ChangeRecord) -> Optional[str]:
        record.priority_rank = PRIORITY_RANK.get(record.priority, 1)
        existing = self._pending_for_entity(s, record.entity_type, record.entity_id)

        if existing is not None:
            merged_op = coalesce_operations(existing.operation, record.operation)
            s.delete(existing)
            if merged_op is None:
                logger.info(
                    "Cancelled pending %s for %s/%s (deleted before sync)",
                    existing.operation, record.entity_type, record.entity_id,
                )
                return None
            record.operation = merged_op
            record.priority = _higher_priority(existing.priority, record.priority)
            record.priority_rank = PRIORITY_RANK.get(record.priority, 1)
            record.attempts = existing.attempts
            s.flush()

        record.seq = self._next_seq(s)
        record.status = ChangeStatus.PENDING.value
        s.add(record)
        return record.id

    # ─── Consumer side ────────────────────────────────────────────────────────

    def drain(self, batch_size: int = MAX_PUSH_BATCH_SIZE, entity_type: Optional[str] = None) -> List[ChangeRecord]:
        """
        Take the next batch of pending records and mark them in flight.

        Args:
            batch_size: Maximum records to return; capped at the remote
                payload limit.
            entity_type: Restrict the batch to one entity type.

        Returns:
            Records in queue order (high tier first, FIFO within a tier).
        """
        batch_size = max(1, min(batch_size, MAX_PUSH_BATCH_SIZE))
        with self._session() as s:
            busy = self._in_flight_keys(s)
            stmt = select(ChangeRecord).where(
                ChangeRecord.status == ChangeStatus.PENDING.value
            )
            if entity_type is not None:
                stmt = stmt.where(ChangeRecord.entity_type == entity_type)
            stmt = stmt.order_by(ChangeRecord.priority_rank, ChangeRecord.seq)

            batch: List[ChangeRecord] = []
            for record in s.exec(stmt):
                if (record.entity_type, record.entity_id) in busy:
                    continue  # an older change for this entity is still on the wire
                batch.append(record)
                if len(batch) >= batch_size:
                    break

            for record in batch:
                record.status = ChangeStatus.IN_FLIGHT.value
                s.add(record)
            s.commit()
            return batch

    def acknowledge(self, record_ids: Iterable[str]) -> int:
        """Remove records the remote side confirmed. Returns the number removed."""
        return self._delete(record_ids)

    def discard(self, record_ids: Iterable[str], reason: str = "") -> int:
        """Remove records made obsolete locally (e.g. the losing side of a conflict)."""
        removed = self._delete(record_ids)
        if removed:
            logger.info("Discarded %d change record(s): %s", removed, reason or "obsolete")
        return removed

    def requeue(self, record_ids: Iterable[str], error: Optional[str] = None, count_attempt: bool = True) -> List[str]:
        """
        Return in-flight records to the tail of their tier.

        If a newer pending record for the same entity appeared meanwhile, the
        two are folded together so per-entity order is preserved. An
        in-flight create never cancels against a newer delete: the remote
        side may have applied it before the failure was reported.

        Returns:
            Ids of records that are pending afterwards.
        """
        requeued: List[str] = []
        with self._session() as s:
            for record_id in record_ids:
                record = s.get(ChangeRecord, record_id)
                if record is None or record.status != ChangeStatus.IN_FLIGHT.value:
                    continue
                if count_attempt:
                    record.attempts += 1
                record.last_error = error

                newer = self._pending_for_entity(s, record.entity_type, record.entity_id)
                if newer is not None:
                    merged_op = coalesce_operations(record.operation, newer.operation)
                    s.delete(record)
                    if merged_op is None:
                        # the create was on the wire and may have landed; the
                        # delete must still go out
                        merged_op = Operation.DELETE.value
                    newer.operation = merged_op
                    newer.attempts = max(newer.attempts, record.attempts)
                    newer.seq = self._next_seq(s)
                    s.add(newer)
                    requeued.append(newer.id)
                    continue

                record.status = ChangeStatus.PENDING.value
                record.seq = self._next_seq(s)
                s.add(record)
                s.flush()
                requeued.append(record.id)
            s.commit()
        return requeued

    def park(self, record_ids: Iterable[str], error: str) -> int:
        """Take records out of the active queue for good, keeping them for inspection."""
        count = 0
        now = datetime.utcnow()
        with self._session() as s:
            for record_id in record_ids:
                record = s.get(ChangeRecord, record_id)
                if record is None:
                    continue
                record.status = ChangeStatus.PARKED.value
                record.parked_at = now
                record.last_error = error
                s.add(record)
                count += 1
            s.commit()
        if count:
            logger.warning("Parked %d change record(s): %s", count, error)
        return count

    def recover(self) -> int:
        """Return records left in flight by a crash to the pending state."""
        with self._session() as s:
            stuck = s.exec(
                select(ChangeRecord).where(ChangeRecord.status == ChangeStatus.IN_FLIGHT.value)
            ).all()
            for record in stuck:
                record.status = ChangeStatus.PENDING.value
                s.add(record)
            s.commit()
        if stuck:
            logger.info("Recovered %d in-flight change record(s)", len(stuck))
        return len(stuck)

    def retry_parked(self) -> int:
        """Move every parked record back to the tail of the queue."""
        with self._session() as s:
            parked = s.exec(
                select(ChangeRecord)
                .where(ChangeRecord.status == ChangeStatus.PARKED.value)
                .order_by(ChangeRecord.seq)
            ).all()
            count = 0
            for record in parked:
                record.status = ChangeStatus.IN_FLIGHT.value
                record.attempts = 0
                record.parked_at = None
                s.add(record)
                count += 1
            s.commit()
        # requeue() folds each one into any newer pending change
        self.requeue([r.id for r in parked], count_attempt=False)
        return count

    def park_exhausted(self, max_attempts: int) -> List[ChangeRecord]:
        """Park pending records that have used up their retry budget."""
        with self._session() as s:
            exhausted = s.exec(
                select(ChangeRecord)
                .where(ChangeRecord.status == ChangeStatus.PENDING.value)
                .where(ChangeRecord.attempts >= max_attempts)
            ).all()
        if exhausted:
            self.park(
                [r.id for r in exhausted],
                f"gave up after {max_attempts} attempts: {exhausted[0].last_error or 'unknown error'}",
            )
        return list(exhausted)

    # ─── Inspection ───────────────────────────────────────────────────────────

    def pending_for(self, entity_type: str) -> Dict[str, ChangeRecord]:
        """Unacknowledged (pending or in-flight) records of one type, keyed by entity id."""
        with self._session() as s:
            rows = s.exec(
                select(ChangeRecord)
                .where(ChangeRecord.entity_type == entity_type)
                .where(ChangeRecord.status != ChangeStatus.PARKED.value)
                .order_by(ChangeRecord.seq)
            ).all()
        # latest record wins when an in-flight and a pending one coexist
        return {r.entity_id: r for r in rows}

    def count(self, status: str = ChangeStatus.PENDING.value, entity_type: Optional[str] = None) -> int:
        with self._session() as s:
            stmt = select(func.count()).select_from(ChangeRecord).where(ChangeRecord.status == status)
            if entity_type is not None:
                stmt = stmt.where(ChangeRecord.entity_type == entity_type)
            return s.exec(stmt).one()

    def records(self, status: Optional[str] = None) -> List[ChangeRecord]:
        with self._session() as s:
            stmt = select(ChangeRecord)
            if status is not None:
                stmt = stmt.where(ChangeRecord.status == status)
            return list(s.exec(stmt.order_by(ChangeRecord.priority_rank, ChangeRecord.seq)).all())

    def entity_types_pending(self) -> List[str]:
        with self._session() as s:
            rows = s.exec(
                select(ChangeRecord.entity_type)
                .where(ChangeRecord.status == ChangeStatus.PENDING.value)
                .distinct()
            ).all()
        return sorted(rows)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _delete(self, record_ids: Iterable[str]) -> int:
        removed = 0
        with self._session() as s:
            for record_id in record_ids:
                record = s.get(ChangeRecord, record_id)
                if record is not None:
                    s.delete(record)
                    removed += 1
            s.commit()
        return removed

    @staticmethod
    def _pending_for_entity(s: Session, entity_type: str, entity_id: str) -> Optional[ChangeRecord]:
        return s.exec(
            select(ChangeRecord)
            .where(ChangeRecord.entity_type == entity_type)
            .where(ChangeRecord.entity_id == entity_id)
            .where(ChangeRecord.status == ChangeStatus.PENDING.value)
        ).first()

    @staticmethod
    def _in_flight_keys(s: Session) -> set:
        rows = s.exec(
            select(ChangeRecord.entity_type, ChangeRecord.entity_id)
            .where(ChangeRecord.status == ChangeStatus.IN_FLIGHT.value)
        ).all()
        return {(t, i) for t, i in rows}

    @staticmethod
    def _next_seq(s: Session) -> int:
        current = s.exec(select(func.max(ChangeRecord.seq))).one()
        return (current or 0) + 1
