from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

REQUEST_ERROR = "request-error"
RESPONSE_ERROR = "response-error"


class PingResult(BaseModel):
    avg_ms: float
    alive: bool


class _ProbeEntry(BaseModel):
    region: str
    target_region: str
    # Per-agent probe counter, increasing across sweeps.
    request_id: Optional[int] = None
    ping: Optional[PingResult] = None

    # A broken ping sub-result must not cost us the HTTP sample.
    @field_validator("ping", mode="before")
    @classmethod
    def _lenient_ping(cls, value: Any) -> Any:
        if value is None or isinstance(value, PingResult):
            return value
        try:
            return PingResult.model_validate(value)
        except ValidationError:
            return None


class ProbeSuccess(_ProbeEntry):
    status: Literal["success"] = "success"
    total_time_ms: float = Field(ge=0, allow_inf_nan=False)
    time_to_first_byte_ms: float = Field(ge=0, allow_inf_nan=False)


class ProbeFailure(_ProbeEntry):
    status: Literal["fail"] = "fail"
    kind: Literal["request-error", "response-error"]
    time_to_fail_ms: float = Field(ge=0, allow_inf_nan=False)
    error: str


# One line of the probe log.
LogEntry = Annotated[Union[ProbeSuccess, ProbeFailure], Field(discriminator="status")]
log_entry_adapter: TypeAdapter = TypeAdapter(LogEntry)


class ProbeStatus(BaseModel):
    region: str
    peers: list[str]
    sweeps_completed: int
    entries_written: int
    running: bool


class ReportMatrix(BaseModel):
    """Square table of ``"{ping}/{http}"`` cells, rows are sources and columns targets."""

    regions: list[str]
    # cells[source][target]; None marks a pair without successful samples.
    cells: dict[str, dict[str, Optional[str]]]

    def cell(self, source: str, target: str) -> Optional[str]:
        return self.cells.get(source, {}).get(target)
