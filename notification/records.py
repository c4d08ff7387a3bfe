"""
Duel change records.

Realtime payloads arrive as untyped string-keyed mappings. They are validated
here once, at the boundary, so the engine only ever sees DuelRecord objects.
"""

import logging
from typing import Optional, Mapping, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from notification.models import (
    DuelStatus,
    VerificationStatus,
    VerificationMethod,
    DisputeStatus,
)

logger = logging.getLogger(__name__)

PING_ACTION = "ping"


class DuelRecord(BaseModel):
    """Post-change snapshot of a duel row."""
    model_config = ConfigDict(extra='ignore', frozen=True)

    id: str = Field(min_length=1)
    status: Optional[DuelStatus] = None
    challenger_id: Optional[str] = None
    opponent_id: Optional[str] = None
    game_type: Optional[str] = None
    game_mode: Optional[str] = None
    winner_id: Optional[str] = None
    verification_status: Optional[VerificationStatus] = None
    verification_method: Optional[VerificationMethod] = None
    dispute_status: Optional[DisputeStatus] = None
    action: Optional[str] = None
    reason: Optional[str] = None

    @field_validator('id', 'challenger_id', 'opponent_id', 'winner_id', mode='before')
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        # uuid / integer keys from the backend are compared as strings
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @property
    def is_ping(self) -> bool:
        return (self.action or "").lower() == PING_ACTION

    @property
    def participants(self) -> tuple:
        return tuple(p for p in (self.challenger_id, self.opponent_id) if p)


class DuelEnvelope(BaseModel):
    """Change event: the new snapshot and, when available, the prior one."""
    model_config = ConfigDict(frozen=True)

    new: DuelRecord
    old: Optional[DuelRecord] = None


def parse_record(record: Any) -> Optional[DuelRecord]:
    """Validate a single record; returns None (and logs) when malformed."""
    if isinstance(record, DuelRecord):
        return record
    if not isinstance(record, Mapping):
        logger.warning(f"Dropping duel record of unexpected type {type(record).__name__}")
        return None
    try:
        return DuelRecord.model_validate(dict(record))
    except ValidationError as e:
        logger.warning(f"Dropping malformed duel record {record.get('id')!r}: {e.error_count()} error(s)")
        return None


def parse_envelope(payload: Any) -> Optional[DuelEnvelope]:
    """
    Validate an inbound {new, old?} envelope.

    A malformed ``new`` record rejects the whole envelope. A malformed ``old``
    record only loses the prior snapshot.
    """
    if isinstance(payload, DuelEnvelope):
        return payload
    if not isinstance(payload, Mapping) or payload.get('new') is None:
        logger.warning("Dropping duel payload without a 'new' record")
        return None

    new_record = parse_record(payload['new'])
    if new_record is None:
        return None

    old_record = None
    if payload.get('old') is not None:
        old_record = parse_record(payload['old'])
        if old_record is None:
            logger.info(f"Ignoring malformed prior snapshot for duel {new_record.id}")

    return DuelEnvelope(new=new_record, old=old_record)
