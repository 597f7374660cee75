import enum
import re
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import Field

from pinrelay.common.models import AppBaseModel, utcnow
from pinrelay.exceptions import InvalidPin

__all__ = (
    "SESSION_TTL",
    "PIN_MIN_LENGTH",
    "PIN_MAX_LENGTH",
    "Session",
    "ClaimOutcome",
    "ClaimResult",
    "validate_pin",
    "resolve_claim",
)

SESSION_TTL = timedelta(hours=1)
PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 10

_PIN_RE = re.compile(r"\d+", re.ASCII)


def validate_pin(pin: Any) -> str:
    if not isinstance(pin, str):
        raise InvalidPin(pin, "PIN must be a string")
    if not PIN_MIN_LENGTH <= len(pin) <= PIN_MAX_LENGTH:
        raise InvalidPin(
            pin,
            f"PIN must be between {PIN_MIN_LENGTH} and {PIN_MAX_LENGTH}"
            " characters long",
        )
    if not _PIN_RE.fullmatch(pin):
        raise InvalidPin(pin, "PIN must contain digits only")
    return pin


class Session(AppBaseModel):
    pin: str
    connection_id: str
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(
        self, now: Optional[datetime] = None, ttl: timedelta = SESSION_TTL
    ) -> bool:
        return (now or utcnow()) - self.created_at >= ttl


class ClaimOutcome(str, enum.Enum):
    CREATED = "created"
    TRANSFERRED = "transferred"
    # the claimant already owned the PIN, only created_at was refreshed
    RENEWED = "renewed"


class ClaimResult(AppBaseModel):
    outcome: ClaimOutcome
    session: Session
    previous_connection_id: Optional[str] = None


def resolve_claim(
    previous: Optional[Session], claimed: Session, ttl: timedelta = SESSION_TTL
) -> ClaimResult:
    """
    Decides the outcome of a claim given the session that was stored right
    before the claim was written. An expired leftover counts as no session.
    """
    if previous is None or previous.is_expired(claimed.created_at, ttl):
        return ClaimResult(outcome=ClaimOutcome.CREATED, session=claimed)
    if previous.connection_id == claimed.connection_id:
        return ClaimResult(outcome=ClaimOutcome.RENEWED, session=claimed)
    return ClaimResult(
        outcome=ClaimOutcome.TRANSFERRED,
        session=claimed,
        previous_connection_id=previous.connection_id,
    )
