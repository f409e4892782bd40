"""HTTP controller layer for channel allotments."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from backend.controllers.dependencies import (
    get_allotment_service,
    get_conflict_resolver,
    get_release_scheduler,
)
from backend.domain.errors import (
    AllotmentError,
    AllotmentNotFoundError,
    AllotmentValidationError,
    CapacityExceededError,
    InsufficientAllocationError,
    OperationCancelledError,
    StaleVersionError,
)
from backend.domain.models import (
    AllocationMethod,
    Channel,
    ChannelRestrictions,
    ChannelType,
    DailyAllotment,
    EventType,
    GlobalDefaults,
    RoomTypeAllotment,
)
from backend.services.allotment_service import AllotmentService
from backend.services.concurrency import OperationContext
from backend.services.conflict_resolver import ConflictResolver
from backend.services.release_scheduler import ReleaseScheduler
from backend.utils.config import get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(tags=["allotments"])


# ---- DTOs ------------------------------------------------------------------


class RestrictionsPayload(BaseModel):
    min_stay: int = Field(default=1, ge=1)
    max_stay: int = Field(default=0, ge=0)
    closed_to_arrival: bool = False
    closed_to_departure: bool = False
    stop_sell: bool = False

    @model_validator(mode="after")
    def validate_stay_bounds(self) -> "RestrictionsPayload":
        if self.max_stay and self.max_stay < self.min_stay:
            raise ValueError("max_stay must be 0 (unlimited) or >= min_stay")
        return self


class ChannelPayload(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    type: ChannelType
    allocation: int = Field(ge=0)
    priority: int
    commission: float = Field(default=0.0, ge=0.0, le=100.0)
    rate: float = Field(default=0.0, ge=0.0)
    overbooking_permitted: bool = False
    is_active: bool = True
    restrictions: RestrictionsPayload = Field(default_factory=RestrictionsPayload)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("channel name must be non-empty")
        return value.strip()

    def to_domain(self) -> Channel:
        return Channel(
            name=self.name,
            type=self.type,
            allocation=self.allocation,
            priority=self.priority,
            commission=self.commission,
            restrictions=ChannelRestrictions(**self.restrictions.model_dump()),
            overbooking_permitted=self.overbooking_permitted,
            rate=self.rate,
            is_active=self.is_active,
        )

    @classmethod
    def from_domain(cls, channel: Channel) -> "ChannelPayload":
        return cls(
            name=channel.name,
            type=channel.type,
            allocation=channel.allocation,
            priority=channel.priority,
            commission=channel.commission,
            rate=channel.rate,
            overbooking_permitted=channel.overbooking_permitted,
            is_active=channel.is_active,
            restrictions=RestrictionsPayload(
                min_stay=channel.restrictions.min_stay,
                max_stay=channel.restrictions.max_stay,
                closed_to_arrival=channel.restrictions.closed_to_arrival,
                closed_to_departure=channel.restrictions.closed_to_departure,
                stop_sell=channel.restrictions.stop_sell,
            ),
        )


class ChannelAllotmentResponse(BaseModel):
    channel_name: str
    allocated: int = Field(ge=0)
    booked: int = Field(ge=0)
    remaining: int
    held: int = Field(ge=0)
    released_at: Optional[datetime] = None


class DailyAllotmentResponse(BaseModel):
    room_type_id: str
    date: date
    total_inventory: int = Field(ge=0)
    channels: list[ChannelAllotmentResponse]
    occupancy_rate: float = Field(ge=0.0)
    revenue: float = Field(ge=0.0)
    warnings: list[str]
    version: int = Field(ge=1)

    @classmethod
    def from_domain(cls, daily: DailyAllotment) -> "DailyAllotmentResponse":
        return cls.model_validate(daily.to_dict())


class CreateAllotmentRequest(BaseModel):
    room_type_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1)
    channels: list[ChannelPayload] = Field(min_length=1)
    allocation_method: Optional[AllocationMethod] = None
    total_inventory: Optional[int] = Field(default=None, ge=0, le=1000)
    overbooking_allowed: Optional[bool] = None
    overbooking_limit: Optional[int] = Field(default=None, ge=0, le=50)


class UpdateChannelsRequest(BaseModel):
    channels: list[ChannelPayload] = Field(min_length=1)
    allocation_method: Optional[AllocationMethod] = None


class RoomTypeAllotmentResponse(BaseModel):
    room_type_id: str
    name: str
    allocation_method: AllocationMethod
    channels: list[ChannelPayload]
    total_inventory: Optional[int] = None
    overbooking_allowed: Optional[bool] = None
    overbooking_limit: Optional[int] = None
    daily_allotments: list[DailyAllotmentResponse] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, allotment: RoomTypeAllotment) -> "RoomTypeAllotmentResponse":
        return cls(
            room_type_id=allotment.room_type_id,
            name=allotment.name,
            allocation_method=allotment.allocation_method,
            channels=[ChannelPayload.from_domain(channel) for channel in allotment.channels],
            total_inventory=allotment.total_inventory,
            overbooking_allowed=allotment.overbooking_allowed,
            overbooking_limit=allotment.overbooking_limit,
            daily_allotments=[
                DailyAllotmentResponse.from_domain(allotment.daily_allotments[day])
                for day in sorted(allotment.daily_allotments)
            ],
        )


class SetAllocationRequest(BaseModel):
    channel_name: str = Field(min_length=1)
    amount: int = Field(ge=0)
    expected_version: int = Field(ge=1)


class TransferRequest(BaseModel):
    from_channel: str = Field(min_length=1)
    to_channel: str = Field(min_length=1)
    amount: int = Field(gt=0)
    expected_version: int = Field(ge=1)

    @model_validator(mode="after")
    def validate_distinct_channels(self) -> "TransferRequest":
        if self.from_channel == self.to_channel:
            raise ValueError("from_channel and to_channel must differ")
        return self


class BulkApplyRequest(BaseModel):
    allocations: dict[str, int]
    expected_version: int = Field(ge=1)

    @field_validator("allocations")
    @classmethod
    def validate_allocations(cls, value: dict[str, int]) -> dict[str, int]:
        for channel_name, amount in value.items():
            if amount < 0:
                raise ValueError(f"allocation for {channel_name} must be >= 0")
        return value


class CopyForwardRequest(BaseModel):
    from_date: date
    expected_version: int = Field(ge=1)


class CrossDateTransferRequest(BaseModel):
    from_date: date
    from_channel: str = Field(min_length=1)
    from_version: int = Field(ge=1)
    to_date: date
    to_channel: str = Field(min_length=1)
    to_version: int = Field(ge=1)
    amount: int = Field(gt=0)


class ApplyMethodRequest(BaseModel):
    start_date: date
    end_date: date
    method: Optional[AllocationMethod] = None

    @model_validator(mode="after")
    def validate_range(self) -> "ApplyMethodRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class BookingRequest(BaseModel):
    channel_name: str = Field(min_length=1)
    check_in: date
    check_out: date
    rooms: int = Field(default=1, gt=0)

    @model_validator(mode="after")
    def validate_stay(self) -> "BookingRequest":
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class HoldRequest(BaseModel):
    channel_name: str = Field(min_length=1)
    held: int = Field(ge=0)
    expected_version: Optional[int] = Field(default=None, ge=1)


class GlobalDefaultsPayload(BaseModel):
    total_inventory: int = Field(ge=1, le=1000)
    default_allocation_method: AllocationMethod
    overbooking_allowed: bool
    overbooking_limit: int = Field(ge=0, le=50)
    release_window: int = Field(ge=1, le=168)
    auto_release: bool
    block_period: int = Field(default=0, ge=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    timezone: str = "UTC"
    check_in_hour: int = Field(default=14, ge=0, le=23)
    version: int = Field(default=1, ge=1)

    def to_domain(self) -> GlobalDefaults:
        return GlobalDefaults(**self.model_dump())

    @classmethod
    def from_domain(cls, defaults: GlobalDefaults) -> "GlobalDefaultsPayload":
        return cls.model_validate(defaults.to_dict())


class AllotmentEventResponse(BaseModel):
    event_type: EventType
    room_type_id: str
    date: date
    channel_name: Optional[str] = None
    amount: int
    detail: str
    created_at: Optional[datetime] = None


class ReleaseSweepResponse(BaseModel):
    released: list[AllotmentEventResponse]


# ---- Error mapping ---------------------------------------------------------


def _http_error(exc: AllotmentError) -> HTTPException:
    if isinstance(exc, AllotmentValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, AllotmentNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (CapacityExceededError, InsufficientAllocationError, StaleVersionError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, OperationCancelledError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=exc.to_detail())


def _context() -> OperationContext:
    return OperationContext.with_timeout(settings.lock_acquire_timeout_seconds)


# ---- Settings --------------------------------------------------------------


@router.get("/settings", response_model=GlobalDefaultsPayload)
def get_global_settings(
    service: AllotmentService = Depends(get_allotment_service),
) -> GlobalDefaultsPayload:
    return GlobalDefaultsPayload.from_domain(service.get_settings())


@router.put("/settings", response_model=GlobalDefaultsPayload)
def save_global_settings(
    payload: GlobalDefaultsPayload,
    service: AllotmentService = Depends(get_allotment_service),
) -> GlobalDefaultsPayload:
    """Save settings; ``version`` must match the stored record."""
    try:
        saved = service.save_settings(payload.to_domain(), expected_version=payload.version)
        return GlobalDefaultsPayload.from_domain(saved)
    except AllotmentError as exc:
        raise _http_error(exc) from exc


# ---- Room type configuration ----------------------------------------------


@router.post(
    "/allotments",
    response_model=RoomTypeAllotmentResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_allotment(
    payload: CreateAllotmentRequest,
    service: AllotmentService = Depends(get_allotment_service),
) -> RoomTypeAllotmentResponse:
    try:
        allotment = service.create_room_type_allotment(
            room_type_id=payload.room_type_id,
            name=payload.name,
            channels=[channel.to_domain() for channel in payload.channels],
            allocation_method=payload.allocation_method,
            total_inventory=payload.total_inventory,
            overbooking_allowed=payload.overbooking_allowed,
            overbooking_limit=payload.overbooking_limit,
        )
        return RoomTypeAllotmentResponse.from_domain(allotment)
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.get("/allotments/{room_type_id}", response_model=RoomTypeAllotmentResponse)
def get_allotment(
    room_type_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    service: AllotmentService = Depends(get_allotment_service),
) -> RoomTypeAllotmentResponse:
    """Return the allotment with every date in the range materialized."""
    try:
        allotment = service.get_allotment(room_type_id, start_date, end_date)
        return RoomTypeAllotmentResponse.from_domain(allotment)
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.put("/allotments/{room_type_id}/channels", response_model=RoomTypeAllotmentResponse)
def update_channels(
    room_type_id: str,
    payload: UpdateChannelsRequest,
    service: AllotmentService = Depends(get_allotment_service),
) -> RoomTypeAllotmentResponse:
    try:
        allotment = service.update_channels(
            room_type_id,
            [channel.to_domain() for channel in payload.channels],
            allocation_method=payload.allocation_method,
        )
        return RoomTypeAllotmentResponse.from_domain(allotment)
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.delete(
    "/allotments/{room_type_id}/channels/{channel_name}",
    response_model=RoomTypeAllotmentResponse,
)
def delete_channel(
    room_type_id: str,
    channel_name: str,
    service: AllotmentService = Depends(get_allotment_service),
) -> RoomTypeAllotmentResponse:
    try:
        return RoomTypeAllotmentResponse.from_domain(
            service.delete_channel(room_type_id, channel_name)
        )
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/allotments/{room_type_id}/apply-method",
    response_model=list[DailyAllotmentResponse],
)
def apply_allocation_method(
    room_type_id: str,
    payload: ApplyMethodRequest,
    service: AllotmentService = Depends(get_allotment_service),
) -> list[DailyAllotmentResponse]:
    try:
        applied = service.apply_allocation_method(
            room_type_id,
            payload.start_date,
            payload.end_date,
            method=payload.method,
        )
        return [DailyAllotmentResponse.from_domain(daily) for daily in applied]
    except AllotmentError as exc:
        raise _http_error(exc) from exc


# ---- Daily allotment edits -------------------------------------------------


@router.get(
    "/allotments/{room_type_id}/days/{day}",
    response_model=DailyAllotmentResponse,
)
def get_daily_allotment(
    room_type_id: str,
    day: date,
    service: AllotmentService = Depends(get_allotment_service),
) -> DailyAllotmentResponse:
    try:
        return DailyAllotmentResponse.from_domain(service.get_daily_allotment(room_type_id, day))
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/allotments/{room_type_id}/days/{day}/allocation",
    response_model=DailyAllotmentResponse,
)
def set_allocation(
    room_type_id: str,
    day: date,
    payload: SetAllocationRequest,
    resolver: ConflictResolver = Depends(get_conflict_resolver),
) -> DailyAllotmentResponse:
    try:
        updated = resolver.set_allocation(
            room_type_id,
            day,
            payload.channel_name,
            payload.amount,
            payload.expected_version,
            _context(),
        )
        return DailyAllotmentResponse.from_domain(updated)
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/allotments/{room_type_id}/days/{day}/transfer",
    response_model=DailyAllotmentResponse,
)
def transfer(
    room_type_id: str,
    day: date,
    payload: TransferRequest,
    resolver: ConflictResolver = Depends(get_conflict_resolver),
) -> DailyAllotmentResponse:
    try:
        updated = resolver.transfer(
            room_type_id,
            day,
            payload.from_channel,
            payload.to_channel,
            payload.amount,
            payload.expected_version,
            _context(),
        )
        return DailyAllotmentResponse.from_domain(updated)
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/allotments/{room_type_id}/days/{day}/bulk",
    response_model=DailyAllotmentResponse,
)
def bulk_apply(
    room_type_id: str,
    day: date,
    payload: BulkApplyRequest,
    resolver: ConflictResolver = Depends(get_conflict_resolver),
) -> DailyAllotmentResponse:
    try:
        updated = resolver.bulk_apply(
            room_type_id,
            day,
            payload.allocations,
            payload.expected_version,
            _context(),
        )
        return DailyAllotmentResponse.from_domain(updated)
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/allotments/{room_type_id}/days/{day}/copy-forward",
    response_model=DailyAllotmentResponse,
)
def copy_forward(
    room_type_id: str,
    day: date,
    payload: CopyForwardRequest,
    resolver: ConflictResolver = Depends(get_conflict_resolver),
) -> DailyAllotmentResponse:
    """Copy ``from_date``'s allocation vector onto ``day``."""
    try:
        updated = resolver.copy_forward(
            room_type_id,
            payload.from_date,
            day,
            payload.expected_version,
            _context(),
        )
        return DailyAllotmentResponse.from_domain(updated)
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/allotments/{room_type_id}/days/{day}/hold",
    response_model=DailyAllotmentResponse,
)
def set_hold(
    room_type_id: str,
    day: date,
    payload: HoldRequest,
    resolver: ConflictResolver = Depends(get_conflict_resolver),
) -> DailyAllotmentResponse:
    try:
        updated = resolver.set_hold(
            room_type_id,
            day,
            payload.channel_name,
            payload.held,
            payload.expected_version,
            _context(),
        )
        return DailyAllotmentResponse.from_domain(updated)
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/allotments/{room_type_id}/cross-date-transfer",
    response_model=list[DailyAllotmentResponse],
)
def cross_date_transfer(
    room_type_id: str,
    payload: CrossDateTransferRequest,
    resolver: ConflictResolver = Depends(get_conflict_resolver),
) -> list[DailyAllotmentResponse]:
    try:
        source, destination = resolver.cross_date_transfer(
            room_type_id,
            payload.from_date,
            payload.from_channel,
            payload.to_date,
            payload.to_channel,
            payload.amount,
            payload.from_version,
            payload.to_version,
            _context(),
        )
        if payload.from_date == payload.to_date:
            return [DailyAllotmentResponse.from_domain(source)]
        return [
            DailyAllotmentResponse.from_domain(source),
            DailyAllotmentResponse.from_domain(destination),
        ]
    except AllotmentError as exc:
        raise _http_error(exc) from exc


# ---- Bookings --------------------------------------------------------------


@router.post(
    "/allotments/{room_type_id}/bookings",
    response_model=list[DailyAllotmentResponse],
    status_code=status.HTTP_201_CREATED,
)
def record_booking(
    room_type_id: str,
    payload: BookingRequest,
    service: AllotmentService = Depends(get_allotment_service),
) -> list[DailyAllotmentResponse]:
    try:
        booked = service.record_booking(
            room_type_id,
            payload.channel_name,
            payload.check_in,
            payload.check_out,
            payload.rooms,
        )
        return [DailyAllotmentResponse.from_domain(daily) for daily in booked]
    except AllotmentError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/allotments/{room_type_id}/bookings/cancel",
    response_model=list[DailyAllotmentResponse],
)
def cancel_booking(
    room_type_id: str,
    payload: BookingRequest,
    service: AllotmentService = Depends(get_allotment_service),
) -> list[DailyAllotmentResponse]:
    try:
        cancelled = service.cancel_booking(
            room_type_id,
            payload.channel_name,
            payload.check_in,
            payload.check_out,
            payload.rooms,
        )
        return [DailyAllotmentResponse.from_domain(daily) for daily in cancelled]
    except AllotmentError as exc:
        raise _http_error(exc) from exc


# ---- Release and events ----------------------------------------------------


@router.post("/release-sweep", response_model=ReleaseSweepResponse)
def run_release_sweep(
    scheduler: ReleaseScheduler = Depends(get_release_scheduler),
) -> ReleaseSweepResponse:
    """Run one release sweep immediately."""
    events = scheduler.sweep()
    return ReleaseSweepResponse(
        released=[AllotmentEventResponse.model_validate(event.to_dict()) for event in events]
    )


@router.get("/events", response_model=list[AllotmentEventResponse])
def list_events(
    room_type_id: Optional[str] = None,
    event_type: Optional[EventType] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    service: AllotmentService = Depends(get_allotment_service),
) -> list[AllotmentEventResponse]:
    try:
        events = service.list_events(room_type_id, event_type, limit)
        return [AllotmentEventResponse.model_validate(event.to_dict()) for event in events]
    except AllotmentError as exc:
        raise _http_error(exc) from exc
