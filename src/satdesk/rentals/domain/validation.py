"""Order completeness validation.

An order is complete when staff can activate a device for it without
chasing the customer: a contact phone, an emergency contact reachable by
phone, and at least one preset message to load onto the device.

Missing fields are reported as dotted paths (``emergencyContact.name``)
so a form can highlight the exact input.
"""

from dataclasses import dataclass
from typing import Optional

from ...core.exceptions import ValidationIncompleteError
from .entities import OrderDraft, RentalOrder

PHONE = "phone"
EMERGENCY_CONTACT_NAME = "emergencyContact.name"
EMERGENCY_CONTACT_PHONE = "emergencyContact.phone"
PRESET_MESSAGES = "presetMessages"

# Reporting order of missing-field paths
REQUIRED_FIELDS = (
    PHONE,
    EMERGENCY_CONTACT_NAME,
    EMERGENCY_CONTACT_PHONE,
    PRESET_MESSAGES,
)


def _blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating one order."""

    missing_fields: tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields

    def as_error(self, order_id: Optional[str] = None) -> Optional[ValidationIncompleteError]:
        """The incompleteness as a reportable error, or None when complete."""
        if self.is_complete:
            return None
        return ValidationIncompleteError(list(self.missing_fields), order_id=order_id)


class OrderValidator:
    """Deterministic completeness check for rental orders.

    The same rule runs on create and on every update; callers store
    ``missing_fields`` and ``data_complete`` from the outcome together.
    """

    def validate(self, order: RentalOrder | OrderDraft) -> ValidationOutcome:
        missing: list[str] = []

        if _blank(order.customer_info.phone):
            missing.append(PHONE)

        contact = order.preferences.emergency_contact
        if contact is None or _blank(contact.name):
            missing.append(EMERGENCY_CONTACT_NAME)
        if contact is None or _blank(contact.phone):
            missing.append(EMERGENCY_CONTACT_PHONE)

        if not order.preferences.preset_messages:
            missing.append(PRESET_MESSAGES)

        return ValidationOutcome(missing_fields=tuple(missing))

    def apply(self, order: RentalOrder) -> ValidationOutcome:
        """Validate and write the derived completeness fields onto the order."""
        outcome = self.validate(order)
        order.missing_fields = outcome.missing_fields
        order.data_complete = outcome.is_complete
        return outcome
