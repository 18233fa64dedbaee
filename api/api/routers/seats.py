"""Seat licensing endpoints: cost preview, purchase, verification and reductions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query

from api.dependencies import RazorpayDep, SessionDep, SettingsDep, TTLCacheDep, UserDep
from api.schemas import (
    ReductionResponse,
    ReductionStatusResponse,
    SeatCalculateRequest,
    SeatCostResponse,
    SeatOrderResponse,
    SeatPurchaseRequest,
    SeatReduceRequest,
    SeatVerifyRequest,
    SeatVerifyResponse,
)
from api.services.seat_service import SeatService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/seats", tags=["seats"])


@router.post("/calculate", response_model=SeatCostResponse)
async def calculate_seat_cost(
    body: SeatCalculateRequest,
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    cache: TTLCacheDep,
    user_id: UserDep,
) -> SeatCostResponse:
    """Preview the pro-rated charge for adding seats to the current cycle."""
    service = SeatService(session, settings, razorpay=razorpay, cache=cache)
    return await service.calculate(user_id, body)


@router.post("/purchase", response_model=SeatOrderResponse)
async def purchase_seats(
    body: SeatPurchaseRequest,
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    cache: TTLCacheDep,
    user_id: UserDep,
) -> SeatOrderResponse:
    service = SeatService(session, settings, razorpay=razorpay, cache=cache)
    return await service.purchase(user_id, body)


@router.post("/verify", response_model=SeatVerifyResponse)
async def verify_seat_payment(
    body: SeatVerifyRequest,
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    cache: TTLCacheDep,
    user_id: UserDep,
) -> SeatVerifyResponse:
    """Verify a seat order payment and raise the recurring seat quantity."""
    service = SeatService(session, settings, razorpay=razorpay, cache=cache)
    return await service.verify(user_id, body)


@router.get("/reduce", response_model=ReductionStatusResponse)
async def get_reduction_status(
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    cache: TTLCacheDep,
    user_id: UserDep,
    firm_id: str = Query(..., alias="firmId", min_length=1),
) -> ReductionStatusResponse:
    service = SeatService(session, settings, razorpay=razorpay, cache=cache)
    return await service.reduction_status(user_id, firm_id)


@router.post("/reduce", response_model=ReductionResponse)
async def schedule_reduction(
    body: SeatReduceRequest,
    session: SessionDep,
    settings: SettingsDep,
    razorpay: RazorpayDep,
    cache: TTLCacheDep,
    user_id: UserDep,
) -> ReductionResponse:
    """Schedule a seat reduction for the next renewal.

    Requesting the current purchased count cancels a pending reduction.
    """
    service = SeatService(session, settings, razorpay=razorpay, cache=cache)
    return await service.reduce(user_id, body)
