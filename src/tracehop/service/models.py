"""Data models for the service layer."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class QueryResponse(BaseModel):
    """Result returned by the downstream query service."""

    data: str = Field(..., description="Values of the forwarded query parameters")
    timestamp: int = Field(..., description="Epoch milliseconds when the result was built")
    description: str = Field(default="From Read", description="Origin of the result")


class IngressResponse(BaseModel):
    """Acknowledgement returned by the ingress service."""

    message_id: str
    trace_id: str


class ChangeMessage(BaseModel):
    """Change published by ingress and consumed by the change processor.

    Ingress merges the request body with the downstream result and adds an id;
    unknown fields from the request body are kept.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    data: str | None = None
    timestamp: int | None = None
    description: str | None = None

    def fields(self) -> dict[str, Any]:
        """All fields, including the ones carried over from the request body."""
        return self.model_dump()


HealthResponse = dict[str, Any]
