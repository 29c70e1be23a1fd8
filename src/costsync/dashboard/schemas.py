"""Request bodies for the /actions endpoints.

Monetary fields are parsed as Decimal. Malformed bodies are rejected with a
422 before anything reaches the service.
"""

from decimal import Decimal

from pydantic import BaseModel, Field

from costsync.models import CheckScope, Dimension, FixTarget, TaskConfigUpdate


class CheckRequest(BaseModel):
    key_ids: list[int] | None = None
    dimensions: list[Dimension] | None = None

    def to_scope(self) -> CheckScope | None:
        if self.key_ids is None and not self.dimensions:
            return None
        return CheckScope(
            key_ids=tuple(self.key_ids) if self.key_ids is not None else None,
            dimensions=tuple(self.dimensions) if self.dimensions else None,
        )


class FixRequest(BaseModel):
    key_id: int
    dimension: Dimension


class FixAllItem(BaseModel):
    key_id: int
    dimension: Dimension
    difference: Decimal = Decimal("0")


class FixAllRequest(BaseModel):
    items: list[FixAllItem] = Field(default_factory=list)

    def to_targets(self) -> list[FixTarget]:
        return [FixTarget(item.key_id, item.dimension) for item in self.items]

    def total_difference(self) -> Decimal:
        return sum((item.difference for item in self.items), Decimal("0"))


class RebuildRequest(BaseModel):
    confirm: str = ""


class ConfigUpdateRequest(BaseModel):
    enabled: bool | None = None
    interval_hours: int | None = None
    auto_fix: bool | None = None
    threshold_usd: Decimal | None = None
    threshold_rate: Decimal | None = None

    def to_update(self) -> TaskConfigUpdate:
        return TaskConfigUpdate(
            enabled=self.enabled,
            interval_hours=self.interval_hours,
            auto_fix=self.auto_fix,
            threshold_usd=self.threshold_usd,
            threshold_rate=self.threshold_rate,
        )
