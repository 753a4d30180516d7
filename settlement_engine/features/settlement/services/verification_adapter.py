"""
Translation boundary between external verification payloads and the state
machines.

Three payload shapes come in (meeting attendance, email-domain scan,
feedback submitted) and one shape goes out: ``VerificationFact``. Nothing
here mutates state. Malformed payloads are logged and dropped.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from settlement_engine.config import settings
from settlement_engine.features.settlement.domain import PartyRole
from settlement_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SignalSource(str, Enum):
    MEETING = "meeting"
    EMAIL_SCAN = "email_scan"
    FEEDBACK = "feedback"


class ClaimType(str, Enum):
    SESSION_ATTENDANCE = "session_attendance"
    REFERRAL_DOMAIN = "referral_domain"
    SESSION_FEEDBACK = "session_feedback"


class _Signal(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MeetingAttendanceReport(_Signal):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    verified: bool
    duration_minutes: int = Field(..., alias="durationMinutes", ge=0)
    participant_count: int = Field(..., alias="participantCount", ge=0)
    method: str = "video_meeting"
    reason: str | None = None


class EmailDomainScanResult(_Signal):
    referral_id: str = Field(..., alias="referralId", min_length=1)
    domain_verified: bool = Field(..., alias="domainVerified")
    sender_domain: str | None = Field(default=None, alias="senderDomain")
    recipient_domain: str | None = Field(default=None, alias="recipientDomain")
    platform_cc: bool | None = Field(default=None, alias="platformCc")
    candidate_named: bool | None = Field(default=None, alias="candidateNamed")


class FeedbackSubmitted(_Signal):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    role: PartyRole
    rating: int | None = Field(default=None, ge=1, le=5)
    comment: str | None = None
    provided_at: datetime = Field(..., alias="providedAt")

    @field_validator("role", mode="before")
    @classmethod
    def _seeker_is_candidate(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() == "seeker":
            return PartyRole.CANDIDATE.value
        return value


@dataclass(slots=True, frozen=True)
class VerificationFact:
    """Normalized verification outcome for one claim."""

    claim_id: str
    claim_type: ClaimType
    verified: bool
    evidence: dict[str, Any] = field(default_factory=dict)


class VerificationSignalAdapter:
    """
    Normalizes raw webhook payloads into ``VerificationFact``.

    A meeting counts as attended only when the provider says so, enough
    people joined, and it ran long enough. An email scan counts only when the
    domains matched and no supporting check came back negative.
    """

    def __init__(
        self,
        min_participants: int | None = None,
        min_duration_minutes: int | None = None,
    ):
        self.min_participants = (
            settings.MIN_MEETING_PARTICIPANTS if min_participants is None else min_participants
        )
        self.min_duration_minutes = (
            settings.MIN_MEETING_DURATION_MINUTES
            if min_duration_minutes is None
            else min_duration_minutes
        )

    def normalize(self, source: SignalSource | str, payload: dict[str, Any]) -> VerificationFact | None:
        """Parse and normalize a payload. Returns None for anything malformed."""
        try:
            source = SignalSource(source)
        except ValueError:
            logger.warning("Unknown verification signal source dropped", source=str(source))
            return None

        parsers = {
            SignalSource.MEETING: (MeetingAttendanceReport, self.from_meeting_report),
            SignalSource.EMAIL_SCAN: (EmailDomainScanResult, self.from_email_scan),
            SignalSource.FEEDBACK: (FeedbackSubmitted, self.from_feedback),
        }
        model, convert = parsers[source]

        try:
            signal = model.model_validate(payload)
        except ValidationError as e:
            logger.warning(
                "Malformed verification signal dropped",
                source=source.value,
                errors=[err.get("loc") for err in e.errors()],
            )
            return None

        return convert(signal)

    def from_meeting_report(self, report: MeetingAttendanceReport) -> VerificationFact:
        reason = report.reason
        verified = report.verified
        if not report.verified:
            reason = reason or "Meeting provider did not verify attendance"
        elif report.participant_count < self.min_participants:
            verified = False
            reason = (
                f"Only {report.participant_count} participant(s) joined; "
                f"{self.min_participants} required"
            )
        elif report.duration_minutes < self.min_duration_minutes:
            verified = False
            reason = (
                f"Meeting lasted {report.duration_minutes} minute(s); "
                f"{self.min_duration_minutes} required"
            )

        return VerificationFact(
            claim_id=report.session_id,
            claim_type=ClaimType.SESSION_ATTENDANCE,
            verified=verified,
            evidence={
                "method": report.method,
                "duration_minutes": report.duration_minutes,
                "participant_count": report.participant_count,
                "reason": reason if not verified else None,
            },
        )

    def from_email_scan(self, result: EmailDomainScanResult) -> VerificationFact:
        checks = {
            "platform_cc": result.platform_cc,
            "candidate_named": result.candidate_named,
        }
        if result.sender_domain and result.recipient_domain:
            checks["domains_match"] = (
                result.sender_domain.lower() == result.recipient_domain.lower()
            )
        failed = [name for name, passed in checks.items() if passed is False]
        verified = result.domain_verified and not failed

        return VerificationFact(
            claim_id=result.referral_id,
            claim_type=ClaimType.REFERRAL_DOMAIN,
            verified=verified,
            evidence={
                "sender_domain": result.sender_domain,
                "recipient_domain": result.recipient_domain,
                "failed_checks": failed,
            },
        )

    def from_feedback(self, event: FeedbackSubmitted) -> VerificationFact:
        return VerificationFact(
            claim_id=event.session_id,
            claim_type=ClaimType.SESSION_FEEDBACK,
            verified=True,
            evidence={
                "role": event.role.value,
                "rating": event.rating,
                "comment": event.comment,
                "provided_at": event.provided_at,
            },
        )
