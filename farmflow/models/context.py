"""Execution context propagated unchanged through every step of an instance."""
from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class ExecutionContext(BaseModel):
    """Identity, locale and correlation data for one workflow instance.

    The context is frozen: it is attached once at submission and no step may
    re-derive identity or re-authenticate. The executor keeps its own copy and
    hands every step a fresh one, so changes a handler makes to ``attributes``
    stay local to that step. ``auth_grant`` is an opaque token issued
    upstream; it is forwarded to providers but never logged.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., min_length=1)
    farmer_id: Optional[str] = None
    locale: str = "en-IN"
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    auth_grant: Optional[SecretStr] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    def grant_value(self) -> Optional[str]:
        """Return the raw authorization grant for forwarding to a provider."""
        return self.auth_grant.get_secret_value() if self.auth_grant else None

    def to_record(self) -> Dict[str, Any]:
        """Serialize for durable storage, keeping the grant value."""
        data = self.model_dump(mode="json")
        data["auth_grant"] = self.grant_value()
        return data

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "ExecutionContext":
        return cls.model_validate(data)
