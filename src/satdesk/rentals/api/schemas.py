"""Pydantic schemas for API request/response validation."""

from typing import Any, Optional

from pydantic import AwareDatetime, BaseModel, Field, model_validator

from ..domain.entities import (
    CleanupStep,
    CustomerInfo,
    Device,
    DeviceCondition,
    DeviceStatus,
    EmergencyContact,
    OrderDraft,
    OrderPreferences,
    OrderSource,
    PresetMessage,
    RentalDetails,
    RentalWindow,
    SatDesk,
)


class CustomerInfoDTO(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""


class EmergencyContactDTO(BaseModel):
    name: str = ""
    phone: str = ""
    relationship: str = ""


class PresetMessageDTO(BaseModel):
    slot: int = Field(ge=1)
    message: str


class PreferencesDTO(BaseModel):
    trip_destination: str = ""
    trip_duration_days: int = Field(default=0, ge=0)
    needs_training: bool = False
    emergency_contact: Optional[EmergencyContactDTO] = None
    preset_messages: list[PresetMessageDTO] = Field(default_factory=list)


class RentalDetailsDTO(BaseModel):
    start: AwareDatetime
    end: AwareDatetime
    device_type: Optional[str] = None
    preferred_sat_desk_id: Optional[str] = None
    device_count: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def check_dates(self):
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class CreateOrderRequest(BaseModel):
    """Request to create a rental order. Missing data is allowed."""

    customer_info: CustomerInfoDTO = Field(default_factory=CustomerInfoDTO)
    preferences: PreferencesDTO = Field(default_factory=PreferencesDTO)
    rental_details: RentalDetailsDTO
    source: OrderSource = OrderSource.MANUAL
    notes: Optional[str] = None
    order_number: Optional[str] = None

    def to_draft(self) -> OrderDraft:
        prefs = self.preferences
        contact = prefs.emergency_contact
        details = self.rental_details
        return OrderDraft(
            customer_info=CustomerInfo(**self.customer_info.model_dump()),
            preferences=OrderPreferences(
                trip_destination=prefs.trip_destination,
                trip_duration_days=prefs.trip_duration_days,
                needs_training=prefs.needs_training,
                emergency_contact=EmergencyContact(**contact.model_dump()) if contact else None,
                preset_messages=[
                    PresetMessage(slot=m.slot, message=m.message) for m in prefs.preset_messages
                ],
            ),
            rental_details=RentalDetails(
                start=details.start,
                end=details.end,
                device_type=details.device_type,
                preferred_sat_desk_id=details.preferred_sat_desk_id,
                device_count=details.device_count,
            ),
            source=self.source,
            notes=self.notes,
            order_number=self.order_number,
        )


class UpdateOrderRequest(BaseModel):
    """Nested field patch; only the keys present are merged."""

    patch: dict[str, Any]
    expected_version: Optional[int] = None


class AssignDeviceRequest(BaseModel):
    device_id: str
    imei: str
    expected_version: Optional[int] = None


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class EscalateOrderRequest(BaseModel):
    reason: str = Field(min_length=1)
    triage: bool = False


class WindowQuery(BaseModel):
    start: AwareDatetime
    end: AwareDatetime
    sat_desk_id: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self):
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self

    @property
    def window(self) -> RentalWindow:
        return RentalWindow(start=self.start, end=self.end)


class RecommendRequest(WindowQuery):
    limit: Optional[int] = Field(default=None, ge=1)


class BulkAllocateRequest(BaseModel):
    """Bulk claim for a group order. Unset fields come from the order."""

    device_count: Optional[int] = Field(default=None, ge=1)
    sat_desk_id: Optional[str] = None
    expected_version: Optional[int] = None


class SatDeskCreateRequest(BaseModel):
    id: str
    name: str
    device_quota: int = Field(ge=0)
    number: int = 0
    description: str = ""
    is_active: bool = True

    def to_sat_desk(self) -> SatDesk:
        return SatDesk(**self.model_dump())


class DeviceCreateRequest(BaseModel):
    """Device intake. New devices enter stock as available."""

    id: str
    imei: str = Field(min_length=1)
    device_number: int
    sat_desk_id: str
    device_name: str = ""
    condition: DeviceCondition = DeviceCondition.GOOD
    battery_health: int = Field(default=100, ge=0, le=100)
    notes: Optional[str] = None

    def to_device(self) -> Device:
        return Device(**self.model_dump())


class CleanupStepRequest(BaseModel):
    step: CleanupStep
    done: bool = True


class DeviceStatusRequest(BaseModel):
    status: DeviceStatus


class OrderResponse(BaseModel):
    """Serialized rental order, as produced by ``RentalOrder.to_dict``."""

    id: str
    order_number: str
    status: str
    source: str
    data_complete: bool
    missing_fields: list[str]
    needs_escalation: bool
    customer_info: dict[str, Any]
    preferences: dict[str, Any]
    rental_details: dict[str, Any]
    notes: Optional[str] = None
    assigned_device_id: Optional[str] = None
    assigned_imei: Optional[str] = None
    assigned_device_ids: list[str] = Field(default_factory=list)
    pending_release_device_ids: list[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    processed_at: Optional[str] = None
    shipped_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    version: int


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    total: int


class AlertListResponse(BaseModel):
    alerts: list[dict[str, Any]]
    total: int
    active: int
    scanned_at: Optional[str] = None


class DismissResponse(BaseModel):
    dismissed: int
