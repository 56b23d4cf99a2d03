"""Pydantic models for request and response bodies.

Field names on the wire are camelCase to match the editor client that
consumes this service; Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .engine import ExecutionResult, ResourceLimits, ToolchainDescriptor

MB = 1024 * 1024


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LimitsOverride(_CamelModel):
    """Optional per-request limits.  Each value can only tighten the default."""

    wall_clock_ms: Optional[int] = Field(default=None, alias="wallClockMs", ge=1)
    cpu_ms: Optional[int] = Field(default=None, alias="cpuMs", ge=1)
    memory_bytes: Optional[int] = Field(default=None, alias="memoryBytes", ge=1)
    max_output_bytes: Optional[int] = Field(default=None, alias="maxOutputBytes", ge=1)
    max_processes: Optional[int] = Field(default=None, alias="maxProcesses", ge=1)


class ExecuteRequest(_CamelModel):
    """Request body for running a program."""

    language: str = Field(..., min_length=1, description="One of the ids listed by /v1/languages.")
    source: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("source", "code"),
        description="Source code to execute.",
    )
    stdin: str = Field(default="", description="Standard input to pass to the program.")
    execution_id: Optional[str] = Field(
        default=None,
        alias="executionId",
        max_length=128,
        pattern=r"^[A-Za-z0-9_.-]+$",
        description="Caller-chosen id, needed to cancel the execution while it runs.",
    )
    limits: Optional[LimitsOverride] = None


class ExecuteResponse(_CamelModel):
    """Response body for a finished execution."""

    success: bool
    output: str
    error: Optional[str] = None
    execution_time_ms: int = Field(..., alias="executionTimeMs")
    memory_usage_mb: Optional[float] = Field(default=None, alias="memoryUsageMb")
    timed_out: bool = Field(..., alias="timedOut")
    truncated: bool
    exit_code: Optional[int] = Field(default=None, alias="exitCode")
    condition: str
    execution_id: Optional[str] = Field(default=None, alias="executionId")

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecuteResponse":
        memory_mb = None
        if result.memory_bytes is not None:
            memory_mb = round(result.memory_bytes / MB, 2)
        return cls(
            success=result.success,
            output=result.stdout,
            error=result.error,
            execution_time_ms=result.wall_time_ms,
            memory_usage_mb=memory_mb,
            timed_out=result.timed_out,
            truncated=result.truncated,
            exit_code=result.exit_code,
            condition=result.condition.value,
            execution_id=result.execution_id,
        )


class LimitsInfo(_CamelModel):
    wall_clock_ms: int = Field(..., alias="wallClockMs")
    cpu_ms: int = Field(..., alias="cpuMs")
    memory_bytes: int = Field(..., alias="memoryBytes")
    max_output_bytes: int = Field(..., alias="maxOutputBytes")
    max_processes: int = Field(..., alias="maxProcesses")

    @classmethod
    def from_limits(cls, limits: ResourceLimits) -> "LimitsInfo":
        return cls(
            wall_clock_ms=limits.wall_clock_ms,
            cpu_ms=limits.cpu_ms,
            memory_bytes=limits.memory_bytes,
            max_output_bytes=limits.max_output_bytes,
            max_processes=limits.max_processes,
        )


class LanguageInfo(_CamelModel):
    """Public view of a toolchain descriptor."""

    id: str
    source_name: str = Field(..., alias="sourceName")
    file_extension: str = Field(..., alias="fileExtension")
    compiled: bool
    screened: bool
    default_limits: LimitsInfo = Field(..., alias="defaultLimits")

    @classmethod
    def from_toolchain(cls, toolchain: ToolchainDescriptor) -> "LanguageInfo":
        return cls(
            id=toolchain.id,
            source_name=toolchain.source_name,
            file_extension=toolchain.file_extension,
            compiled=toolchain.compiled,
            screened=toolchain.screened,
            default_limits=LimitsInfo.from_limits(toolchain.default_limits),
        )


class LanguagesResponse(BaseModel):
    languages: List[LanguageInfo] = Field(default_factory=list)


class CancelResponse(_CamelModel):
    execution_id: str = Field(..., alias="executionId")
    cancelled: bool
