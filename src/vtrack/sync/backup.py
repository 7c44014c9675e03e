"""
Backup/Rollback Manager.

Snapshots entity collections before a bulk apply so a failure halfway
through can put every touched entity back. Snapshots are zlib-compressed
JSON rows in the BackupSnapshot table; at most ``max_backups`` are kept and
the oldest is evicted first.
"""
import inspect
import json
import logging
import uuid
import zlib
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from vtrack.models.sync import BackupSnapshot
from vtrack.sync.errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BACKUPS = 10


def compress_payload(data: Any) -> bytes:
    return zlib.compress(json.dumps(data, default=str, sort_keys=True).encode("utf-8"))


def decompress_payload(blob: bytes) -> Any:
    return json.loads(zlib.decompress(blob).decode("utf-8"))


class BackupManager:
    """Bounded store of pre-apply snapshots."""

    def __init__(self, engine, max_backups: int = DEFAULT_MAX_BACKUPS):
        self.engine = engine
        self.max_backups = max(1, max_backups)

    def snapshot(self, operation_id: str, data: Any, metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Store a compressed copy of ``data``.

        Args:
            operation_id: Identifier of the operation about to run.
            data: JSON-serializable state to preserve.
            metadata: Free-form context (entity counts, cycle id, ...).

        Returns:
            The new backup id.
        """
        blob = compress_payload(data)
        backup_id = f"{operation_id}_{uuid.uuid4().hex[:12]}"
        meta = dict(metadata or {})
        meta["data_size"] = len(json.dumps(data, default=str))
        meta["compressed_size"] = len(blob)

        with Session(self.engine) as s:
            latest = s.exec(select(func.max(BackupSnapshot.timestamp))).one()
            timestamp = datetime.utcnow()
            if latest is not None and timestamp <= latest:
                # keep eviction order strict when snapshots land in the same tick
                timestamp = latest + timedelta(microseconds=1)
            s.add(BackupSnapshot(
                id=backup_id,
                operation_id=operation_id,
                timestamp=timestamp,
                compressed_payload=blob,
                metadata_=meta,
            ))
            s.commit()

        self._evict()
        logger.info("Created backup %s for operation %s", backup_id, operation_id)
        return backup_id

    def restore(self, backup_id: str) -> Any:
        """Return the data stored under ``backup_id``.

        Raises:
            StorageError: if the backup is missing or cannot be decoded.
        """
        with Session(self.engine) as s:
            backup = s.get(BackupSnapshot, backup_id)
            if backup is None:
                raise StorageError(f"Backup not found: {backup_id}")
            blob = backup.compressed_payload
        try:
            return decompress_payload(blob)
        except (zlib.error, ValueError) as exc:
            raise StorageError(f"Backup {backup_id} is corrupt: {exc}") from exc

    async def rollback(self, backup_id: str, apply_fn: Callable[[Any], Any]) -> bool:
        """
        Restore ``backup_id`` and hand the data to ``apply_fn``.

        ``apply_fn`` may be a plain function or a coroutine function.

        Raises:
            StorageError: if the backup cannot be read or apply_fn fails.
        """
        data = self.restore(backup_id)
        try:
            result = apply_fn(data)
            if inspect.isawaitable(result):
                await result
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Rollback to {backup_id} failed: {exc}") from exc
        logger.info("Rolled back to backup %s", backup_id)
        return True

    def discard(self, backup_id: str) -> bool:
        """Delete a snapshot once the operation it guarded has completed."""
        with Session(self.engine) as s:
            backup = s.get(BackupSnapshot, backup_id)
            if backup is None:
                return False
            s.delete(backup)
            s.commit()
        return True

    def list_backups(self) -> List[Dict[str, Any]]:
        """Snapshot summaries, newest first (payloads not included)."""
        with Session(self.engine) as s:
            rows = s.exec(select(BackupSnapshot).order_by(BackupSnapshot.timestamp.desc())).all()
            return [
                {
                    "id": b.id,
                    "operation_id": b.operation_id,
                    "timestamp": b.timestamp.isoformat(),
                    "metadata": b.metadata_,
                }
                for b in rows
            ]

    def _evict(self) -> None:
        with Session(self.engine) as s:
            rows = s.exec(select(BackupSnapshot).order_by(BackupSnapshot.timestamp.desc())).all()
            for old in rows[self.max_backups:]:
                logger.debug("Evicting backup %s", old.id)
                s.delete(old)
            s.commit()
