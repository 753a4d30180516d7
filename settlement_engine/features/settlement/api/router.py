"""
Settlement routes.

Thin HTTP layer over the state machines: parse the request, pass the caller
context through, convert domain results into response models. Settlement
errors are mapped to status codes by ``settlement_error_handler``.
"""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from settlement_engine.features.settlement.domain import (
    CallerRole,
    Forbidden,
    InvalidTransition,
    NotFound,
    OfferDetails,
    PaymentStatus,
    PayoutFailed,
    PreconditionFailed,
    SettlementError,
)
from settlement_engine.features.settlement.domain.transitions import ensure_privileged
from settlement_engine.features.settlement.services import SettlementServices
from settlement_engine.infrastructure.observability.logging import get_logger

from .dependencies import CallerContext, caller_context, get_services
from .schemas import (
    CancelSessionResponse,
    ConfirmOfferRequest,
    ConfirmScheduleRequest,
    CreateReferralRequest,
    CreateSessionRequest,
    FeedbackRequest,
    JobOfferResponse,
    PayoutRequest,
    PayoutResultResponse,
    ReasonRequest,
    ReconcileResponse,
    RecordPaymentRequest,
    ReferralResponse,
    RefundRequest,
    RejectReferralRequest,
    ReleasePaymentRequest,
    ReportOfferRequest,
    SessionResponse,
    VerifyReferralRequest,
)

router = APIRouter(tags=["settlement"])
logger = get_logger(__name__)

ERROR_STATUS_CODES: dict[type[SettlementError], int] = {
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    PreconditionFailed: status.HTTP_412_PRECONDITION_FAILED,
    Forbidden: status.HTTP_403_FORBIDDEN,
    PayoutFailed: status.HTTP_502_BAD_GATEWAY,
}


async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    logger.info(
        "Settlement request rejected",
        path=request.url.path,
        error_code=exc.code,
        status_code=status_code,
        entity_type=exc.entity_type,
        entity_id=exc.entity_id,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "invalid_request", "message": str(exc)},
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    request: CreateSessionRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    if not caller.role.is_privileged and caller.caller_id != request.seeker_id:
        raise Forbidden("Sessions are booked by the seeker")

    session = await services.sessions.create_session(
        request.seeker_id,
        request.professional_id,
        request.start_time,
        request.end_time,
        request.amount,
        payout_account=request.payout_account,
        currency=request.currency,
    )
    return SessionResponse.from_domain(session)


@router.get("/sessions", response_model=list[SessionResponse])
async def list_my_sessions(
    limit: int = 50,
    offset: int = 0,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    if not caller.caller_id:
        return []
    sessions = await services.sessions.list_sessions_for_user(
        caller.caller_id, limit=min(limit, 100), offset=offset
    )
    return [SessionResponse.from_domain(s) for s in sessions]


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    session = await services.sessions.get_session(session_id)
    if not caller.role.is_privileged and session.participant_role(caller.caller_id) is None:
        raise NotFound(f"Session {session_id} not found", entity_type="session", entity_id=session_id)
    return SessionResponse.from_domain(session)


@router.post("/sessions/{session_id}/schedule", response_model=SessionResponse)
async def confirm_schedule(
    session_id: str,
    request: ConfirmScheduleRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    session = await services.sessions.confirm_schedule(
        session_id, request.start_time, request.end_time, caller.role
    )
    return SessionResponse.from_domain(session)


@router.post("/sessions/{session_id}/complete", response_model=SessionResponse)
async def mark_completed(
    session_id: str,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    session = await services.sessions.mark_completed(session_id, caller.role)
    return SessionResponse.from_domain(session)


@router.post("/sessions/{session_id}/no-show", response_model=SessionResponse)
async def mark_no_show(
    session_id: str,
    request: ReasonRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    session = await services.sessions.mark_no_show(
        session_id, caller.role, reason=request.reason, caller_id=caller.caller_id
    )
    return SessionResponse.from_domain(session)


@router.post("/sessions/{session_id}/payment", response_model=SessionResponse)
async def record_payment(
    session_id: str,
    request: RecordPaymentRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    session = await services.sessions.record_payment(
        session_id, request.payment_reference, caller.role
    )
    return SessionResponse.from_domain(session)


@router.post("/sessions/{session_id}/feedback", response_model=SessionResponse)
async def submit_feedback(
    session_id: str,
    request: FeedbackRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    if not caller.role.is_privileged:
        session = await services.sessions.get_session(session_id)
        if session.participant_role(caller.caller_id) != request.role:
            raise Forbidden(
                "Feedback can only be submitted for your own side of the session",
                entity_type="session",
                entity_id=session_id,
            )

    session = await services.sessions.submit_feedback(
        session_id,
        request.role,
        caller.role,
        rating=request.rating,
        comment=request.comment,
    )
    return SessionResponse.from_domain(session)


@router.post("/sessions/{session_id}/release", response_model=PayoutResultResponse)
async def release_payment(
    session_id: str,
    request: ReleasePaymentRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    result = await services.sessions.release_payment(
        session_id,
        caller.role,
        admin_override=request.admin_override,
        caller_id=caller.caller_id,
        idempotency_key=request.idempotency_key,
    )
    return PayoutResultResponse.from_domain(result)


@router.post("/sessions/{session_id}/refund", response_model=PayoutResultResponse)
async def refund_session(
    session_id: str,
    request: RefundRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    result = await services.sessions.refund(
        session_id,
        request.reason,
        caller.role,
        caller_id=caller.caller_id,
        idempotency_key=request.idempotency_key,
    )
    return PayoutResultResponse.from_domain(result)


@router.post("/sessions/{session_id}/cancel", response_model=CancelSessionResponse)
async def cancel_session(
    session_id: str,
    request: ReasonRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    session, refund = await services.sessions.cancel(
        session_id, caller.role, reason=request.reason, caller_id=caller.caller_id
    )
    return CancelSessionResponse(
        session=SessionResponse.from_domain(session),
        refund=PayoutResultResponse.from_domain(refund) if refund else None,
        refund_deferred=refund is None and session.payment_status == PaymentStatus.PAID,
    )


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------


@router.post("/referrals", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED)
async def create_referral(
    request: CreateReferralRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    if caller.role != CallerRole.PROFESSIONAL:
        raise Forbidden("Only professionals can submit referrals")

    referral = await services.referrals.create_referral(
        caller.caller_id,
        request.candidate_email,
        company_domain=request.company_domain,
        payout_account=request.payout_account,
    )
    return ReferralResponse.from_domain(referral)


@router.get("/referrals", response_model=list[ReferralResponse])
async def list_my_referrals(
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    if not caller.caller_id:
        return []
    referrals = await services.referrals.list_referrals_for_referrer(caller.caller_id)
    return [ReferralResponse.from_domain(r) for r in referrals]


@router.get("/referrals/{referral_id}", response_model=ReferralResponse)
async def get_referral(
    referral_id: str,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    referral = await services.referrals.get_referral(referral_id)
    if not caller.role.is_privileged and referral.referrer_id != caller.caller_id:
        raise NotFound(
            f"Referral {referral_id} not found", entity_type="referral", entity_id=referral_id
        )
    return ReferralResponse.from_domain(referral)


@router.post("/referrals/{referral_id}/verify", response_model=ReferralResponse)
async def verify_referral(
    referral_id: str,
    request: VerifyReferralRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    referral = await services.referrals.verify(
        referral_id, request.reward_amount, caller.role, caller_id=caller.caller_id
    )
    return ReferralResponse.from_domain(referral)


@router.post("/referrals/{referral_id}/payout", response_model=PayoutResultResponse)
async def payout_referral(
    referral_id: str,
    request: PayoutRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    result = await services.referrals.payout(
        referral_id,
        caller.role,
        caller_id=caller.caller_id,
        idempotency_key=request.idempotency_key,
    )
    return PayoutResultResponse.from_domain(result)


@router.post("/referrals/{referral_id}/reject", response_model=ReferralResponse)
async def reject_referral(
    referral_id: str,
    request: RejectReferralRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    referral = await services.referrals.reject(
        referral_id, request.reason, caller.role, caller_id=caller.caller_id
    )
    return ReferralResponse.from_domain(referral)


# ---------------------------------------------------------------------------
# Job offers
# ---------------------------------------------------------------------------


@router.post("/job-offers", response_model=JobOfferResponse, status_code=status.HTTP_201_CREATED)
async def report_job_offer(
    request: ReportOfferRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    offer = await services.job_offers.report(
        request.session_id,
        caller.caller_id,
        request.reporter_role,
        OfferDetails(
            position=request.position, start_date=request.start_date, salary=request.salary
        ),
        request.committed_bonus,
        request.company_id,
        caller.role,
    )
    return JobOfferResponse.from_domain(offer)


@router.get("/job-offers", response_model=list[JobOfferResponse])
async def list_my_job_offers(
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    if not caller.caller_id:
        return []
    offers = await services.job_offers.list_offers_for_user(caller.caller_id)
    return [JobOfferResponse.from_domain(o) for o in offers]


@router.get("/job-offers/{offer_id}", response_model=JobOfferResponse)
async def get_job_offer(
    offer_id: str,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    offer = await services.job_offers.get_offer(offer_id)
    if not caller.role.is_privileged and offer.participant_role(caller.caller_id) is None:
        raise NotFound(f"Job offer {offer_id} not found", entity_type="job_offer", entity_id=offer_id)
    return JobOfferResponse.from_domain(offer)


@router.post("/job-offers/{offer_id}/confirm", response_model=JobOfferResponse)
async def confirm_job_offer(
    offer_id: str,
    request: ConfirmOfferRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    offer = await services.job_offers.confirm(
        offer_id, caller.caller_id, request.confirmer_role, caller.role
    )
    return JobOfferResponse.from_domain(offer)


@router.post("/job-offers/{offer_id}/settle", response_model=PayoutResultResponse)
async def settle_job_offer(
    offer_id: str,
    request: PayoutRequest,
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    result = await services.job_offers.settle(
        offer_id,
        caller.role,
        caller_id=caller.caller_id,
        idempotency_key=request.idempotency_key,
    )
    return PayoutResultResponse.from_domain(result)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@router.post("/settlement/reconcile", response_model=ReconcileResponse)
async def reconcile_payouts(
    caller: CallerContext = Depends(caller_context),
    services: SettlementServices = Depends(get_services),
):
    ensure_privileged(caller.role, "run payout reconciliation")
    summary = await services.orchestrator.reconcile()
    return ReconcileResponse(**summary)
