"""Query and Execution Schemas."""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

ExecutionStatus = Literal["pending", "running", "completed", "failed", "cancelled", "timeout"]
TERMINAL_STATUSES = ("completed", "failed", "cancelled", "timeout")
LIVE_STATUSES = ("pending", "running")


def _check_operation(value: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(value.get("method"), str) or not value["method"]:
        raise ValueError("operation must define a non-empty 'method'")
    if "params" in value and not isinstance(value["params"], dict):
        raise ValueError("operation 'params' must be an object")
    return value


Operation = Annotated[dict[str, Any], AfterValidator(_check_operation)]


class QueryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    tool_id: str
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    operation: Operation  # {"method": str, "params"?: {...}}
    output_schema: dict[str, Any] | None = None
    timeout: int | None = Field(default=None, gt=0)
    schema_version: str = "1.0.0"


class QueryUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    tool_id: str | None = None
    parameters: dict[str, Any] | None = None
    operation: Operation | None = None
    output_schema: dict[str, Any] | None = None
    timeout: int | None = Field(default=None, gt=0)


class QueryInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    tool_id: str
    schema_version: str = "1.0.0"
    parameters: dict[str, Any]
    operation: dict[str, Any]
    output_schema: dict[str, Any] | None = None
    timeout: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    execution_count: int = 0
    last_executed: datetime | None = None


class QueryFilters(BaseModel):
    tool_id: str | None = None
    search: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    last_executed_after: datetime | None = None
    has_been_executed: bool | None = None


class QueryList(BaseModel):
    queries: list[QueryInfo]
    total: int
    has_more: bool


class ExecutionOptions(BaseModel):
    """Per-execution switches."""

    timeout: float | None = Field(default=None, gt=0)  # seconds
    validate_output: bool = True  # also gates the parameter-validation short circuit
    save_execution: bool = True
    collectors: dict[str, dict[str, Any]] = Field(default_factory=dict)  # name -> input


class ParameterValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class QueryExecutionResult(BaseModel):
    execution_id: str
    query_id: str
    status: ExecutionStatus
    result: Any = None
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    execution_time_ms: float | None = None
    parameter_validation: ParameterValidation | None = None
    credential_id: str | None = None
    collector_outputs: dict[str, Any] | None = None


class ExecutionInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    query_id: str
    parameters: dict[str, Any] | None = None
    collector_inputs: dict[str, Any] | None = None
    credential_refs: list[str] | None = None
    status: ExecutionStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: Any = None
    error_details: dict[str, Any] | None = None


class ExecutionHistory(BaseModel):
    executions: list[ExecutionInfo]
    total: int
    has_more: bool


class QueryUsage(BaseModel):
    id: str
    name: str
    execution_count: int
    last_executed: datetime | None = None


class QueryStats(BaseModel):
    total_queries: int = 0
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    timeout_executions: int = 0
    cancelled_executions: int = 0
    average_execution_time_ms: float = 0.0
    top_queries: list[QueryUsage] = Field(default_factory=list)
