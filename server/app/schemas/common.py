from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Timestamped(ORMModel):
    created_at: datetime
    updated_at: datetime


class ErrorResponse(BaseModel):
    error: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class SweepResult(BaseModel):
    job: str
    processed: int
    items: list[dict[str, Any]] = Field(default_factory=list)
