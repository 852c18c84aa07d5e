"""Result models shared by both transports."""
import time
from typing import Any, List, Optional

from pydantic import BaseModel, Field, model_validator


class RequestContext(BaseModel):
    """What was sent, where, and when. Attached to every result."""

    method: str
    params: List[Any] = Field(default_factory=list)
    id: int
    url: str
    timestamp: float = Field(default_factory=time.time)


class StreamContext(BaseModel):
    """Diagnostic context of a subscription."""

    method: str
    params: List[Any] = Field(default_factory=list)
    url: str
    timestamp: float = Field(default_factory=time.time)


class CallError(BaseModel):
    """Classified failure of a call or a stream event."""

    code: int
    message: str


class CallResult(BaseModel):
    """Outcome of a single call: either data (and metadata) or an error."""

    context: RequestContext
    data: Optional[Any] = None
    metadata: Optional[Any] = None
    error: Optional[CallError] = None

    @model_validator(mode="after")
    def _check_single_outcome(self) -> "CallResult":
        if self.error is not None and (self.data is not None or self.metadata is not None):
            raise ValueError("A failed result cannot carry data or metadata")
        return self

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(
        cls, context: RequestContext, data: Any, metadata: Any = None
    ) -> "CallResult":
        return cls(context=context, data=data, metadata=metadata)

    @classmethod
    def failure(cls, context: RequestContext, code: int, message: str) -> "CallResult":
        return cls(context=context, error=CallError(code=code, message=message))


class StreamEvent(BaseModel):
    """A push notification payload delivered to a subscription callback."""

    data: Optional[Any] = None
    metadata: Optional[Any] = None
