from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import JSON, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts


SQL_ADMIT_EVENT = text("""
  INSERT INTO payment_events(
    id, provider, provider_event_id, provider_payment_id, event_type,
    payload, created_at
  ) VALUES (
    :id, :provider, :provider_event_id, :provider_payment_id, :event_type,
    :payload, :created_at
  )
  ON CONFLICT (provider, provider_event_id) DO NOTHING
  RETURNING id
""").bindparams(bindparam("payload", type_=JSON))


@dataclass(frozen=True)
class Admission:
    admitted: bool
    provider: str
    provider_event_id: str

    @property
    def duplicate(self) -> bool:
        return not self.admitted


def event_key(provider_payment_id: str, status: str,
              provider_event_id: Optional[str] = None) -> str:
    """
    Providers that send an event id get it used verbatim; otherwise one
    event per (payment, status) pair, so each status change is processed
    once.
    """
    if provider_event_id:
        return provider_event_id
    return f"{provider_payment_id}:{status}"


async def admit(
    db: AsyncSession,
    provider: str,
    provider_event_id: str,
    payload: Dict[str, Any] | None = None,
    *,
    provider_payment_id: Optional[str] = None,
    event_type: Optional[str] = None,
) -> Admission:
    """
    Insert-if-absent on (provider, provider_event_id).

    Runs inside the caller's transaction, together with the settlement it
    guards: if settlement fails the admission row rolls back with it and the
    provider's retry is processed normally.
    """
    row = (await db.execute(SQL_ADMIT_EVENT, {
        "id": new_id(),
        "provider": provider,
        "provider_event_id": provider_event_id,
        "provider_payment_id": provider_payment_id,
        "event_type": event_type,
        "payload": payload or {},
        "created_at": now_ts(),
    })).first()
    return Admission(
        admitted=row is not None,
        provider=provider,
        provider_event_id=provider_event_id,
    )
