from __future__ import annotations

from datetime import datetime
from typing import Optional

from workspace_store.db.enums import DecisionCardStatusEnum
from workspace_store.db.errors import InvariantViolationError
from workspace_store.db.models import DecisionCard, utcnow
from workspace_store.db.repositories.base import Repository
from workspace_store.db.validation import as_utc, validate_decision_card


class DecisionCardsRepository(Repository[DecisionCard]):
    model = DecisionCard
    validator = staticmethod(validate_decision_card)

    def _pending(self, action_id: str) -> DecisionCard:
        card = self.find_unique_or_throw({"action_id": action_id})
        if card.status != DecisionCardStatusEnum.pending.value:
            raise InvariantViolationError(
                f"Decision card {action_id} is {card.status}, only pending cards can be decided"
            )
        return card

    def approve(self, action_id: str, *, approved_by: str, approved_at: Optional[datetime] = None) -> DecisionCard:
        self._pending(action_id)
        return self.update(
            where={"action_id": action_id},
            data={
                "status": DecisionCardStatusEnum.approved.value,
                "approved_by": approved_by,
                "approved_at": approved_at or utcnow(),
            },
        )

    def reject(self, action_id: str) -> DecisionCard:
        self._pending(action_id)
        return self.update(
            where={"action_id": action_id},
            data={"status": DecisionCardStatusEnum.rejected.value},
        )

    def list_pending(self, workspace_id: str, *, now: Optional[datetime] = None) -> list[DecisionCard]:
        """Pending cards that have not expired, most ready first."""
        return self.find_many(
            where={
                "workspace_id": workspace_id,
                "status": DecisionCardStatusEnum.pending.value,
                "expires_at": {"gt": as_utc(now or utcnow())},
            },
            order_by=[{"readiness_score": "desc"}, {"expires_at": "asc"}],
        )
