"""Schemas for stored versus true counts."""

from typing import Literal

from pydantic import BaseModel, Field


class CounterValue(BaseModel):
    """One aggregate compared with its on-demand count."""

    stored: int
    actual: int
    drift: int = Field(..., description="actual - stored")
    cost_hint: str


class CountsResponse(BaseModel):
    """Every counter carried by one entity."""

    entity: Literal["user", "post"]
    id: int
    counters: dict[str, CounterValue]

    @property
    def consistent(self) -> bool:
        return all(value.drift == 0 for value in self.counters.values())
