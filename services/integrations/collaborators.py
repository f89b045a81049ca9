from __future__ import annotations

from typing import List, Protocol

from shared.contracts.errors import Forbidden
from shared.contracts.models import AdherenceAlert


class Capability:
    RECORD_DOSES = "can_record_doses"
    MANAGE_MEDICATIONS = "can_manage_medications"


class PermissionChecker(Protocol):
    """Answers whether an actor is the patient or an authorized family member."""

    def has_capability(self, actor_id: str, patient_id: str, capability: str) -> bool: ...

    def alert_recipients(self, patient_id: str) -> List[str]: ...


class NotificationDispatcher(Protocol):
    """Delivers a structured alert; transport and wording are its concern."""

    def dispatch(self, alert: AdherenceAlert) -> bool: ...


def require_capability(
    permissions: PermissionChecker, actor_id: str, patient_id: str, capability: str
) -> None:
    if not permissions.has_capability(actor_id, patient_id, capability):
        raise Forbidden(
            f"Actor {actor_id} lacks {capability} for patient {patient_id}",
            field="actor",
        )
