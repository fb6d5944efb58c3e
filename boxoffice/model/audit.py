# model/audit.py
"""
Audit trail.

The settlement machine does not write audit rows itself. It returns
AuditRecords and the caller hands them to an AuditSink after the settlement
transaction has committed. Recording is best-effort: a failing sink is logged
and never undoes a settlement.
"""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from .orm import AuditEntry
from ..helpers import new_id, now_ts
from ..infra.sql import Gated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    org_id: Optional[str]
    action: str
    entity_type: str
    entity_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)


class AuditSink(ABC):
    @abstractmethod
    async def record(self, org_id: Optional[str], action: str,
                     entity_type: str, entity_id: Optional[str],
                     metadata: Dict[str, Any]) -> None:
        ...


class SqlAuditSink(AuditSink):
    """Writes each entry in its own short transaction."""

    def __init__(self, sessions: async_sessionmaker,
                 gated: Optional[Gated] = None) -> None:
        self.sessions = sessions
        self.gated = gated

    async def _write(self, entry: AuditEntry) -> None:
        async with self.sessions() as db:
            async with db.begin():
                db.add(entry)

    async def record(self, org_id, action, entity_type, entity_id,
                     metadata) -> None:
        entry = AuditEntry(
            id=new_id(),
            org_id=org_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            meta=metadata,
            created_at=now_ts(),
        )
        if self.gated is None:
            await self._write(entry)
            return
        async with self.gated():
            await self._write(entry)


class MemoryAuditSink(AuditSink):
    """Keeps records in a list."""

    def __init__(self) -> None:
        self.records: List[AuditRecord] = []

    async def record(self, org_id, action, entity_type, entity_id,
                     metadata) -> None:
        self.records.append(AuditRecord(org_id, action, entity_type,
                                        entity_id, dict(metadata)))


async def record_all(sink: Optional[AuditSink],
                     records: Iterable[AuditRecord]) -> int:
    """Post-commit hook. Returns how many records were written."""
    if sink is None:
        return 0
    written = 0
    for rec in records:
        try:
            await sink.record(rec.org_id, rec.action, rec.entity_type,
                              rec.entity_id, rec.metadata)
            written += 1
        except Exception:
            logger.exception("audit record %s for %s %s failed", rec.action,
                             rec.entity_type, rec.entity_id)
    return written
