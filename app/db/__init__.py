from .models import (
    Base,
    DoseInstance,
    MedicationSchedule,
    User,
)

__all__ = [
    "Base",
    "DoseInstance",
    "MedicationSchedule",
    "User",
]
