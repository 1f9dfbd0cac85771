from .models import (
    Base,
    DoseEvent,
    Household,
    HouseholdMember,
    HouseholdRole,
    Medication,
    MedicationLog,
    NotificationDelivery,
    Pet,
    User,
)

__all__ = [
    "Base",
    "DoseEvent",
    "Household",
    "HouseholdMember",
    "HouseholdRole",
    "Medication",
    "MedicationLog",
    "NotificationDelivery",
    "Pet",
    "User",
]
