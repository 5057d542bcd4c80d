"""
Consultation, subscription and billing enumerations.

Every status field is a closed enumeration; lifecycle and billing code
matches on these members exhaustively.
"""

import enum


class SessionType(str, enum.Enum):
    """Kind of live consultation record."""
    TEXT = "text_session"
    CALL = "call_session"


class TextSessionStatus(str, enum.Enum):
    """Text session lifecycle."""
    WAITING_FOR_PROVIDER = "waiting_for_provider"  # Created, provider has not accepted
    ACTIVE = "active"  # Provider accepted, metering running
    ENDED = "ended"  # Ended by a participant, abandoned, or out of quota
    EXPIRED = "expired"  # Ended by timeout


class CallSessionStatus(str, enum.Enum):
    """Call session lifecycle."""
    CONNECTING = "connecting"  # Created, ringing
    WAITING_FOR_PROVIDER = "waiting_for_provider"
    ANSWERED = "answered"  # Provider picked up, media not yet confirmed
    ACTIVE = "active"  # Media connected, metering running
    ENDED = "ended"
    MISSED = "missed"  # Never connected
    DECLINED = "declined"  # Provider declined


TEXT_LIVE_STATUSES = frozenset({TextSessionStatus.WAITING_FOR_PROVIDER, TextSessionStatus.ACTIVE})
TEXT_TERMINAL_STATUSES = frozenset({TextSessionStatus.ENDED, TextSessionStatus.EXPIRED})

CALL_LIVE_STATUSES = frozenset({
    CallSessionStatus.CONNECTING,
    CallSessionStatus.WAITING_FOR_PROVIDER,
    CallSessionStatus.ANSWERED,
    CallSessionStatus.ACTIVE,
})
CALL_TERMINAL_STATUSES = frozenset({
    CallSessionStatus.ENDED,
    CallSessionStatus.MISSED,
    CallSessionStatus.DECLINED,
})


class CallType(str, enum.Enum):
    VOICE = "voice"
    VIDEO = "video"


class ConsultationType(str, enum.Enum):
    """Quota bucket a unit is billed against."""
    TEXT = "text"
    VOICE = "voice"
    VIDEO = "video"

    @classmethod
    def for_call(cls, call_type: CallType) -> "ConsultationType":
        return cls.VOICE if call_type == CallType.VOICE else cls.VIDEO


class EndType(str, enum.Enum):
    """Why a session is being ended; drives partial-unit billing policy."""
    MANUAL = "manual"  # Ended by a participant; partial unit is billable
    TIMEOUT = "timeout"  # Inactivity or allowance exhausted; partial unit is free
    INSUFFICIENT_QUOTA = "insufficient_quota"  # Metering could not cover the next unit


class SessionSource(str, enum.Enum):
    INSTANT = "INSTANT"  # Talk-now flow
    APPOINTMENT = "APPOINTMENT"  # Appointment auto-start


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransactionCategory(str, enum.Enum):
    """Wallet transaction categories; each is paired with a reference for idempotency."""
    AUTO_DEDUCTION = "auto_deduction"
    SETTLEMENT = "settlement"
    APPOINTMENT_PAYMENT = "appointment_payment"


class MeteringOutcome(str, enum.Enum):
    NO_OP = "no_op"  # Nothing new to bill
    DEDUCTED = "deducted"
    INSUFFICIENT_QUOTA = "insufficient_quota"  # Reported, nothing changed
