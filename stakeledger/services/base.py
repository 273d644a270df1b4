"""
Shared types for the stake engine.
Staker identities, staking terms, operation results and the error hierarchy.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


# ===================
# Staker identity
# ===================

@dataclass(frozen=True)
class RegisteredStaker:
    """Staker with a platform account."""
    user_id: str

    @property
    def is_manual(self) -> bool:
        return False


@dataclass(frozen=True)
class ManualStaker:
    """Off-platform backer tracked by display name (and a directory entry when one exists)."""
    name: str
    directory_id: Optional[str] = None

    @property
    def is_manual(self) -> bool:
        return True


StakerIdentity = Union[RegisteredStaker, ManualStaker]

_WHITESPACE = re.compile(r"\s+")


def normalize_display_name(name: str) -> str:
    """Normalize a manual staker name for identity comparison."""
    return _WHITESPACE.sub(" ", name.strip()).casefold()


def staker_key(identity: StakerIdentity) -> str:
    """
    Stable key for a staker identity.

    Registered stakers key on their user id. Manual stakers key on their
    directory id when present, otherwise on the normalized display name.
    """
    if isinstance(identity, RegisteredStaker):
        if not identity.user_id:
            raise ValidationError("Registered staker requires a user id")
        return f"user:{identity.user_id}"
    if isinstance(identity, ManualStaker):
        if identity.directory_id:
            return f"manual:{identity.directory_id}"
        normalized = normalize_display_name(identity.name or "")
        if not normalized:
            raise ValidationError("Manual staker requires a display name")
        return f"manual-name:{normalized}"
    raise ValidationError("Missing staker identity")


# ===================
# Terms and metadata
# ===================

@dataclass
class StakerTerm:
    """One staker's share of a session: identity, fraction sold and markup."""
    staker: StakerIdentity
    percentage: Decimal
    markup: Decimal
    amount_bought: Optional[Decimal] = None


@dataclass
class SessionMetadata:
    """Descriptive, non-authoritative session details copied onto agreements."""
    game_name: str = ""
    stakes: str = ""
    session_date: Optional[datetime] = None
    is_tournament: bool = False


@dataclass
class EventMetadata:
    """Display details of the event an invite belongs to."""
    name: str
    event_date: Optional[datetime] = None
    max_bullets: int = 1


# ===================
# Results
# ===================

@dataclass
class OperationResult(Generic[T]):
    """
    Outcome of an engine operation whose failure is an expected race
    (unknown id, invite already answered) rather than a caller bug.
    """
    success: bool
    value: Optional[T] = None
    error: Optional["StakeEngineError"] = None

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error else None

    @classmethod
    def ok(cls, value: T) -> "OperationResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: "StakeEngineError") -> "OperationResult[T]":
        return cls(success=False, error=error)


@dataclass
class ReconcileResult:
    """Merged drafts from one reconciliation pass plus what the pass did."""
    drafts: list = field(default_factory=list)
    created_stake_ids: list[str] = field(default_factory=list)
    migrated_stake_ids: list[str] = field(default_factory=list)
    removed_stake_ids: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    error: Optional["StakeEngineError"] = None

    @property
    def success(self) -> bool:
        return self.error is None


# ===================
# Errors
# ===================

class StakeEngineError(Exception):
    """Base exception for stake engine errors."""
    code = "stake_engine_error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class ValidationError(StakeEngineError):
    """Raised when terms or identities are invalid; nothing is persisted."""
    code = "validation_error"


class NotFoundError(StakeEngineError):
    """Operation targets an unknown stake or invite id."""
    code = "not_found"


class InvalidStateTransition(StakeEngineError):
    """Raised when a transition is not allowed from the record's current status."""
    code = "invalid_state_transition"


class AlreadyAnsweredError(StakeEngineError):
    """Invite accept/decline on an invite that is no longer pending."""
    code = "already_answered"


class TransientIOError(StakeEngineError):
    """Raised when the store or cache is unreachable; safe for the caller to retry."""
    code = "transient_io"
