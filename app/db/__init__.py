from .models import Base, MedicationCommandRecord, MedicationEventRecord

__all__ = [
    "Base",
    "MedicationCommandRecord",
    "MedicationEventRecord",
]
