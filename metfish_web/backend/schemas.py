from __future__ import annotations

from pydantic import BaseModel, Field, field_validator
from typing import Literal


ResponseStatus = Literal["success", "error"]

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


class TrainingParameters(BaseModel):
    """Caller-overridable options forwarded to the training script."""

    num_iterations: int = Field(500, ge=1)
    learning_rate: str = "1e-3"
    sequence_index: int = Field(0, ge=0)
    save_frequency: int = Field(25, ge=1)
    random_init: bool = True
    saxs_ext: str = "_atom_only.csv"

    @field_validator("learning_rate", mode="before")
    @classmethod
    def _check_learning_rate(cls, v: object) -> str:
        s = str(v).strip()
        try:
            value = float(s)
        except ValueError:
            raise ValueError(f"learning_rate must be a number, got {s!r}") from None
        if not value > 0:
            raise ValueError("learning_rate must be positive")
        return s

    @field_validator("random_init", mode="before")
    @classmethod
    def _parse_bool(cls, v: object) -> bool:
        if isinstance(v, bool):
            return v
        s = str(v).strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        raise ValueError(f"random_init must be true or false, got {v!r}")

    @field_validator("saxs_ext")
    @classmethod
    def _check_saxs_ext(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("saxs_ext must not be empty")
        return v


class HealthResponse(BaseModel):
    status: str = "healthy"
    gpu: str = "available"


class CheckpointListResponse(BaseModel):
    status: ResponseStatus = "success"
    checkpoints: list[str] = Field(default_factory=list)


class JobResultResponse(BaseModel):
    status: ResponseStatus = "success"
    job_id: str
    results: list[str] = Field(default_factory=list)
    output: str = ""


class ResultListResponse(BaseModel):
    status: ResponseStatus = "success"
    job_id: str
    results: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    status: ResponseStatus = "error"
    message: str
    error_type: str = "error"
    job_id: str | None = None
    output: str | None = None
    traceback: str | None = None
