"""Collector Schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

CollectorType = Literal["python", "node", "shell", "executable"]

DEFAULT_INPUT_SCHEMA = {"type": "object", "properties": {}, "additionalProperties": True}
DEFAULT_OUTPUT_SCHEMA = {"type": "object", "additionalProperties": True}


class CollectorInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    file_path: str
    input_schema: dict[str, Any]
    output_schema: dict[str, Any]
    timeout: int
    enabled: bool = True
    version: str = "1.0.0"
    environment: dict[str, str] | None = None
    created_at: datetime | None = None
    last_executed: datetime | None = None
    execution_count: int = 0
    total_execution_ms: int = 0


class FileInspection(BaseModel):
    """Static checks on a collector program."""

    valid: bool
    type: CollectorType | None = None
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    has_input_schema: bool = False
    has_output_schema: bool = False
    input_schema: dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_INPUT_SCHEMA))
    output_schema: dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_OUTPUT_SCHEMA))
    version: str | None = None


class CollectorRunOptions(BaseModel):
    timeout: int | None = Field(default=None, gt=0)  # seconds, overrides the collector's
    working_directory: str | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    validate_input: bool = True
    validate_output: bool = False
    execution_id: str | None = None


class CollectorRunResult(BaseModel):
    collector_id: str
    status: Literal["success", "error", "timeout"]
    output: dict[str, Any] | None = None
    error: str | None = None
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    execution_time_ms: float = 0.0


class CollectorUsage(BaseModel):
    id: str
    name: str
    execution_count: int
    last_executed: datetime | None = None


class CollectorStats(BaseModel):
    total_collectors: int = 0
    enabled_collectors: int = 0
    disabled_collectors: int = 0
    total_executions: int = 0
    average_execution_ms: float = 0.0
    most_used: list[CollectorUsage] = Field(default_factory=list)
