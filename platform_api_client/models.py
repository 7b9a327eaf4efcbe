import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from platform_api_client.errors import JobExecutionError, RemoteDataPathError
from platform_api_client.utils import read_json, write_json

DATA_ID_FIELD = "data-id"


class JobState(str, Enum):
    READY = "READY"
    QUEUED = "QUEUED"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETE, JobState.FAILED)

    @property
    def is_success(self) -> bool:
        return self is JobState.COMPLETE

    @property
    def is_failure(self) -> bool:
        return self is JobState.FAILED


def is_terminal(state) -> bool:
    return JobState(state).is_terminal


def is_success(state) -> bool:
    return JobState(state).is_success


def is_failure(state) -> bool:
    return JobState(state).is_failure


class JobFailureType(str, Enum):
    USER = "USER"
    ANALYTIC = "ANALYTIC"
    PLATFORM = "PLATFORM"
    NONE = "NONE"


class JobComputeMode(str, Enum):
    CPU = "CPU"
    GPU = "GPU"
    BEST = "BEST"


class AnalyticType(str, Enum):
    PLATFORM = "PLATFORM"
    IMAGE_TO_VIDEO = "IMAGE_TO_VIDEO"


class Job(BaseModel):
    """Read-only snapshot of a job as last reported by the platform.

    Only ``id`` and ``state`` are required; any other fields the platform
    returns are kept as extras.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    state: JobState
    failure_type: JobFailureType = JobFailureType.NONE
    name: Optional[str] = None
    archived: bool = False
    analytic_id: Optional[str] = None
    auto_start: Optional[bool] = None
    compute_mode: Optional[JobComputeMode] = None
    upload_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    fail_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None
    output_filename: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_failure_type(cls, data: Any) -> Any:
        # the platform reports a missing attribution as null
        if isinstance(data, dict) and data.get("failure_type") is None:
            data = {**data, "failure_type": JobFailureType.NONE}
        return data

    @model_validator(mode="after")
    def _check_failure_type(self) -> "Job":
        if self.failure_type is not JobFailureType.NONE and self.state is not JobState.FAILED:
            raise ValueError(
                f"Job {self.id} has failure type {self.failure_type.value} "
                f"but is in state {self.state.value}"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_complete(self) -> bool:
        return self.state.is_success

    @property
    def is_failed(self) -> bool:
        return self.state.is_failure

    def raise_for_failure(self) -> None:
        """Raises JobExecutionError if the job has failed"""
        if self.is_failed:
            raise JobExecutionError(self.id, self.failure_type)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Whether the job's expiration date has passed. Jobs without one never expire."""
        if self.expiration_date is None:
            return False
        expiration = self.expiration_date
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now >= expiration


class WaitConfig(BaseModel):
    poll_interval: float = Field(default=5.0, gt=0)  # seconds
    max_wait: float = Field(default=600.0, gt=0)  # seconds

    @model_validator(mode="after")
    def _check_budget(self) -> "WaitConfig":
        if self.max_wait < self.poll_interval:
            raise ValueError("max_wait must be at least poll_interval")
        return self


class RemoteDataPath(BaseModel):
    """Reference to a piece of data in cloud storage"""

    data_id: str

    @classmethod
    def from_data_id(cls, data_id: str) -> "RemoteDataPath":
        return cls(data_id=data_id)

    @classmethod
    def from_dict(cls, obj: Any) -> "RemoteDataPath":
        if isinstance(obj, dict) and obj.get(DATA_ID_FIELD):
            return cls(data_id=obj[DATA_ID_FIELD])
        raise RemoteDataPathError(
            f"Invalid RemoteDataPath dict: {json.dumps(obj, indent=4, default=str)}"
        )

    @classmethod
    def is_remote_path_dict(cls, val: Any) -> bool:
        try:
            cls.from_dict(val)
            return True
        except RemoteDataPathError:
            return False

    def to_dict(self) -> Dict[str, str]:
        return {DATA_ID_FIELD: self.data_id}


def _serialize(val: Any) -> Any:
    if isinstance(val, RemoteDataPath):
        return val.to_dict()
    if isinstance(val, dict):
        return {k: _serialize(v) for k, v in val.items()}
    if isinstance(val, (list, tuple)):
        return [_serialize(v) for v in val]
    if isinstance(val, Enum):
        return val.value
    return val


class JobRequest(BaseModel):
    """A request to run an analytic on remote data.

    Inputs are always RemoteDataPath instances; parameters may be either
    RemoteDataPath instances (data parameters) or any JSON-serializable value.
    """

    analytic: str
    version: Optional[str] = None
    compute_mode: Optional[JobComputeMode] = None
    inputs: Dict[str, RemoteDataPath] = Field(default_factory=dict)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def set_input(self, name: str, path: RemoteDataPath) -> None:
        self.inputs[name] = path

    def set_data_parameter(self, name: str, path: RemoteDataPath) -> None:
        self.parameters[name] = path

    def set_parameter(self, name: str, val: Any) -> None:
        self.parameters[name] = val

    def to_dict(self) -> Dict[str, Any]:
        obj: Dict[str, Any] = {"analytic": self.analytic}
        if self.version is not None:
            obj["version"] = self.version
        if self.compute_mode is not None:
            obj["compute_mode"] = self.compute_mode.value
        obj["inputs"] = _serialize(self.inputs)
        obj["parameters"] = _serialize(self.parameters)
        return obj

    def to_str(self) -> str:
        return json.dumps(self.to_dict(), indent=4)

    def to_json(self, path: str) -> None:
        write_json(self.to_dict(), path)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "JobRequest":
        job_request = cls(
            analytic=obj["analytic"],
            version=obj.get("version"),
            compute_mode=obj.get("compute_mode"),
        )
        for name, val in (obj.get("inputs") or {}).items():
            job_request.set_input(name, RemoteDataPath.from_dict(val))
        for name, val in (obj.get("parameters") or {}).items():
            if RemoteDataPath.is_remote_path_dict(val):
                job_request.set_data_parameter(name, RemoteDataPath.from_dict(val))
            else:
                job_request.set_parameter(name, val)
        return job_request

    @classmethod
    def from_str(cls, s: str) -> "JobRequest":
        return cls.from_dict(json.loads(s))

    @classmethod
    def from_json(cls, path: str) -> "JobRequest":
        return cls.from_dict(read_json(path))
