from fastapi import APIRouter, Depends, HTTPException, status

from card_activation.config import settings
from card_activation.schemas.cards import (
    CardCreateRequest,
    CardCreateResponse,
    CardStatusResponse,
    OtpRequest,
    OtpResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
)
from card_activation.services.activation import ActivationService, activation_service
from card_activation.services.errors import (
    ActivationError,
    CardAlreadyActive,
    InternalError,
    InvalidCredential,
    InvalidOtp,
    NoOtpRequested,
    NotFound,
    OtpAlreadyUsed,
    OtpExpired,
    Throttled,
    ValidationError,
)

router = APIRouter(prefix="/cards", tags=["cards"])

_STATUS_BY_ERROR: dict[type[ActivationError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NoOtpRequested: status.HTTP_400_BAD_REQUEST,
    OtpAlreadyUsed: status.HTTP_400_BAD_REQUEST,
    OtpExpired: status.HTTP_400_BAD_REQUEST,
    InvalidCredential: status.HTTP_401_UNAUTHORIZED,
    InvalidOtp: status.HTTP_401_UNAUTHORIZED,
    NotFound: status.HTTP_404_NOT_FOUND,
    CardAlreadyActive: status.HTTP_409_CONFLICT,
    Throttled: status.HTTP_429_TOO_MANY_REQUESTS,
    InternalError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_activation_service() -> ActivationService:
    return activation_service


def _to_http(exc: ActivationError) -> HTTPException:
    status_code = _STATUS_BY_ERROR.get(
        type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return HTTPException(status_code=status_code, detail=exc.detail)


@router.post("/create", response_model=CardCreateResponse)
def create_card(
    payload: CardCreateRequest,
    service: ActivationService = Depends(get_activation_service),
) -> CardCreateResponse:
    try:
        created = service.create_card(payload.owner_profile_id, payload.pin)
    except ActivationError as exc:
        raise _to_http(exc) from exc
    return CardCreateResponse(
        card_id=created.card_id, card_token=created.card_token, pin=created.pin
    )


@router.post("/request-otp", response_model=OtpResponse, response_model_exclude_none=True)
def request_otp(
    payload: OtpRequest,
    service: ActivationService = Depends(get_activation_service),
) -> OtpResponse:
    try:
        issued = service.request_otp(
            payload.card_token,
            payload.pin,
            payload.channel,
            payload.resolved_destination(),
        )
    except ActivationError as exc:
        raise _to_http(exc) from exc
    return OtpResponse(
        ok=True,
        message="OTP sent" if issued.delivered else "OTP issued, delivery not confirmed",
        delivered=issued.delivered,
        expires_in_seconds=issued.expires_in_seconds,
        otp=issued.otp if settings.otp_debug else None,
    )


@router.post("/verify", response_model=OtpVerifyResponse)
def verify_otp(
    payload: OtpVerifyRequest,
    service: ActivationService = Depends(get_activation_service),
) -> OtpVerifyResponse:
    try:
        result = service.verify_otp(payload.card_token, payload.otp, payload.activated_by)
    except ActivationError as exc:
        raise _to_http(exc) from exc
    return OtpVerifyResponse(
        ok=True, message="card activated", activated_at=result.activated_at
    )


@router.get("/{card_token}", response_model=CardStatusResponse)
def get_card_status(
    card_token: str,
    service: ActivationService = Depends(get_activation_service),
) -> CardStatusResponse:
    try:
        card = service.card_status(card_token)
    except ActivationError as exc:
        raise _to_http(exc) from exc
    return CardStatusResponse(
        card_token=card.card_token,
        is_active=card.is_active,
        activated_at=card.activated_at,
    )
