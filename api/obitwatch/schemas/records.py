from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

Verdict = Literal["pending", "approved", "rejected", "skipped", "errored"]
LinkKind = Literal["resolvable", "unresolved_stub"]


class RecordOut(BaseModel):
    id: int
    name: str
    external_id: str
    link_kind: LinkKind
    age: int | None = None
    description: str | None = None
    cause: str | None = None
    verdict: Verdict
    rejection_reason: str | None = None
    verdict_at: datetime | None = None
    created_at: datetime


class RecordRejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)
