"""Job kinds, payload models and job records.

Every job kind has exactly one payload model. Payloads travel through Redis
as JSON using camelCase keys (``triggeredAt``, ``productId``,
``triggerType``).
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


class JobKind(str, Enum):
    """The closed set of jobs the worker runs."""

    CHECK_PRICE = "check-price"
    SEND_DIGEST = "send-digest"
    DIGEST_FLOW = "digest-flow"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"  # Waiting out a retry backoff
    WAITING_CHILDREN = "waiting-children"  # Flow parent gated on its children
    COMPLETED = "completed"
    FAILED = "failed"


class RetryableJobError(Exception):
    """Transient failure; the job is retried with backoff until attempts run out."""


class UnrecoverableJobError(Exception):
    """Permanent failure; the job fails immediately without further attempts."""


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class CheckPricePayload(_Payload):
    """Check one product page.

    ``url`` is authoritative. ``product_id`` is a deprecated fallback used
    only when no URL is given.
    """

    kind: Literal["check-price"] = "check-price"
    url: Optional[str] = None
    product_id: Optional[str] = Field(default=None, alias="productId")
    triggered_at: datetime = Field(default_factory=datetime.utcnow, alias="triggeredAt")

    @model_validator(mode="after")
    def check_target(self) -> "CheckPricePayload":
        if not self.url and not self.product_id:
            raise ValueError("check-price requires a url or productId")
        return self


class SendDigestPayload(_Payload):
    """Start a digest flow over all active products."""

    kind: Literal["send-digest"] = "send-digest"
    trigger_type: Literal["manual", "scheduled"] = Field(default="manual", alias="triggerType")


class DigestFlowPayload(_Payload):
    """Flow parent: runs once every child check has settled."""

    kind: Literal["digest-flow"] = "digest-flow"
    trigger_type: Literal["manual", "scheduled"] = Field(default="manual", alias="triggerType")
    child_count: int = Field(default=0, alias="childCount")


JobPayload = Union[CheckPricePayload, SendDigestPayload, DigestFlowPayload]

PAYLOAD_MODELS: dict[JobKind, type[_Payload]] = {
    JobKind.CHECK_PRICE: CheckPricePayload,
    JobKind.SEND_DIGEST: SendDigestPayload,
    JobKind.DIGEST_FLOW: DigestFlowPayload,
}


def parse_payload(kind: str, data: dict[str, Any]) -> JobPayload:
    """
    Validate raw job data against the payload model for its kind.

    Raises:
        UnrecoverableJobError: Unknown kind or invalid payload
    """
    try:
        job_kind = JobKind(kind)
    except ValueError as e:
        raise UnrecoverableJobError(f"Unknown job kind: {kind!r}") from e

    try:
        return PAYLOAD_MODELS[job_kind].model_validate({**data, "kind": job_kind.value})
    except ValidationError as e:
        raise UnrecoverableJobError(f"Invalid {kind} payload: {e}") from e


def _to_float(value: Optional[str]) -> Optional[float]:
    return float(value) if value else None


@dataclass
class Job:
    """A job as stored in Redis."""

    id: str
    kind: str
    data: dict[str, Any]
    state: str
    attempts_made: int = 0
    max_attempts: int = 1
    parent_id: Optional[str] = None
    token: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    created_at: Optional[float] = None  # epoch milliseconds
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_final_attempt(self) -> bool:
        """Whether a failure now would exhaust the job's attempts."""
        return self.attempts_made + 1 >= self.max_attempts

    @classmethod
    def from_hash(cls, job_id: str, fields: dict[str, str]) -> "Job":
        """Build a Job from its Redis hash (decoded strings)."""
        try:
            data = json.loads(fields.get("data") or "{}")
        except json.JSONDecodeError:
            data = {"_raw": fields.get("data")}
        result = None
        if fields.get("result"):
            try:
                result = json.loads(fields["result"])
            except json.JSONDecodeError:
                result = fields["result"]

        return cls(
            id=job_id,
            kind=fields.get("kind", ""),
            data=data if isinstance(data, dict) else {"_raw": data},
            state=fields.get("state", ""),
            attempts_made=int(fields.get("attempts_made") or 0),
            max_attempts=int(fields.get("max_attempts") or 1),
            parent_id=fields.get("parent_id") or None,
            token=fields.get("token") or None,
            result=result,
            error=fields.get("error") or None,
            created_at=_to_float(fields.get("created_at")),
            processed_at=_to_float(fields.get("processed_at")),
            finished_at=_to_float(fields.get("finished_at")),
        )
