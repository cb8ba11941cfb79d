"""
PayoutAuditTrail -- tamper-evident, per-key audit trail of payout transitions.

Responsibility:
    Appends one PayoutAuditEntryModel for every payout state transition and
    validates the hash chain of a key on demand (dispute resolution).

Invariants enforced:
    - Append-only: entries are never updated or deleted.
    - ``seq`` is 1, 2, 3, ... per idempotency key.
    - ``hash = H(payload_hash | prev_hash)``; the first entry of a key links
      to ``genesis``.

Failure modes:
    - AuditChainBrokenError from ``verify_chain`` when a stored hash or link
      does not match its recomputed value.

Non-goals:
    Does NOT commit.  The PayoutRepository commits the audit entry in the
    same transaction as the state change it describes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_batch.models.payout import PayoutAuditEntryModel
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.exceptions import AuditChainBrokenError
from settlement_kernel.logging_config import get_logger
from settlement_kernel.utils.hashing import hash_chain_link, hash_payload

logger = get_logger("batch.audit_trail")


@dataclass(frozen=True)
class PayoutAuditEntry:
    """Read-side view of one audit row."""

    idempotency_key: str
    seq: int
    coach_id: str
    old_state: str | None
    new_state: str
    occurred_at: datetime
    attempt: int
    gateway_ref: str | None
    error_code: str | None
    detail: str | None
    hash: str


def _normalize_timestamp(value: datetime) -> str:
    # Some backends return naive UTC datetimes; hash the same text either way.
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat()


def _entry_payload(
    *,
    idempotency_key: str,
    seq: int,
    coach_id: str,
    old_state: str | None,
    new_state: str,
    occurred_at: datetime,
    attempt: int,
    gateway_ref: str | None,
    error_code: str | None,
    detail: str | None,
    run_id: UUID | None,
) -> dict[str, Any]:
    return {
        "idempotency_key": idempotency_key,
        "seq": seq,
        "coach_id": coach_id,
        "old_state": old_state,
        "new_state": new_state,
        "occurred_at": _normalize_timestamp(occurred_at),
        "attempt": attempt,
        "gateway_ref": gateway_ref,
        "error_code": error_code,
        "detail": detail,
        "run_id": str(run_id) if run_id is not None else None,
    }


class PayoutAuditTrail:
    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def _last_entry(self, idempotency_key: str) -> PayoutAuditEntryModel | None:
        return self._session.execute(
            select(PayoutAuditEntryModel)
            .where(PayoutAuditEntryModel.idempotency_key == idempotency_key)
            .order_by(PayoutAuditEntryModel.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def record(
        self,
        *,
        idempotency_key: str,
        coach_id: str,
        old_state: str | None,
        new_state: str,
        actor_id: UUID,
        attempt: int = 0,
        gateway_ref: str | None = None,
        error_code: str | None = None,
        detail: str | None = None,
        run_id: UUID | None = None,
    ) -> PayoutAuditEntryModel:
        """Append one transition to ``idempotency_key``'s chain (flushed, not committed)."""
        last = self._last_entry(idempotency_key)
        seq = last.seq + 1 if last is not None else 1
        prev_hash = last.hash if last is not None else None
        occurred_at = self._clock.now()

        payload_hash = hash_payload(_entry_payload(
            idempotency_key=idempotency_key,
            seq=seq,
            coach_id=coach_id,
            old_state=old_state,
            new_state=new_state,
            occurred_at=occurred_at,
            attempt=attempt,
            gateway_ref=gateway_ref,
            error_code=error_code,
            detail=detail,
            run_id=run_id,
        ))

        entry = PayoutAuditEntryModel(
            idempotency_key=idempotency_key,
            seq=seq,
            coach_id=coach_id,
            old_state=old_state,
            new_state=new_state,
            occurred_at=occurred_at,
            attempt=attempt,
            gateway_ref=gateway_ref,
            error_code=error_code,
            detail=detail,
            run_id=run_id,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=hash_chain_link(payload_hash, prev_hash),
            created_by_id=actor_id,
            updated_by_id=None,
        )
        self._session.add(entry)
        self._session.flush()

        logger.info("payout_transition_recorded", extra={
            "idempotency_key": idempotency_key,
            "coach_id": coach_id,
            "old_state": old_state,
            "new_state": new_state,
            "seq": seq,
            "error_code": error_code,
        })
        return entry

    def entries(self, idempotency_key: str) -> list[PayoutAuditEntry]:
        rows = self._rows(idempotency_key)
        return [
            PayoutAuditEntry(
                idempotency_key=row.idempotency_key,
                seq=row.seq,
                coach_id=row.coach_id,
                old_state=row.old_state,
                new_state=row.new_state,
                occurred_at=row.occurred_at,
                attempt=row.attempt,
                gateway_ref=row.gateway_ref,
                error_code=row.error_code,
                detail=row.detail,
                hash=row.hash,
            )
            for row in rows
        ]

    def _rows(self, idempotency_key: str) -> list[PayoutAuditEntryModel]:
        return list(self._session.execute(
            select(PayoutAuditEntryModel)
            .where(PayoutAuditEntryModel.idempotency_key == idempotency_key)
            .order_by(PayoutAuditEntryModel.seq)
        ).scalars().all())

    def verify_chain(self, idempotency_key: str) -> bool:
        """
        Recompute every hash of ``idempotency_key``'s chain.

        Raises:
            AuditChainBrokenError: On the first entry that does not match.
        """
        prev_hash: str | None = None
        for expected_seq, row in enumerate(self._rows(idempotency_key), start=1):
            if row.seq != expected_seq:
                raise self._broken(row, f"expected seq {expected_seq}")
            if row.prev_hash != prev_hash:
                raise self._broken(row, "prev_hash does not match predecessor")

            payload_hash = hash_payload(_entry_payload(
                idempotency_key=row.idempotency_key,
                seq=row.seq,
                coach_id=row.coach_id,
                old_state=row.old_state,
                new_state=row.new_state,
                occurred_at=row.occurred_at,
                attempt=row.attempt,
                gateway_ref=row.gateway_ref,
                error_code=row.error_code,
                detail=row.detail,
                run_id=row.run_id,
            ))
            if payload_hash != row.payload_hash:
                raise self._broken(row, "payload hash mismatch")
            if hash_chain_link(payload_hash, prev_hash) != row.hash:
                raise self._broken(row, "hash mismatch")
            prev_hash = row.hash
        return True

    @staticmethod
    def _broken(row: PayoutAuditEntryModel, reason: str) -> AuditChainBrokenError:
        logger.critical("payout_audit_chain_broken", extra={
            "idempotency_key": row.idempotency_key,
            "seq": row.seq,
            "reason": reason,
        })
        return AuditChainBrokenError(row.idempotency_key, row.seq, reason)
