from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from obitwatch.services.pipeline import RunOptions


class RunRequest(BaseModel):
    ids: list[int] = Field(default_factory=list)
    external_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("external_ids", "wiki_paths"),
    )
    retry_pending: bool = False
    pending_limit: int | None = Field(default=None, ge=0, le=10000)
    drain_all: bool = False
    provider: str | None = None
    model: str | None = None

    @field_validator("external_ids")
    @classmethod
    def _strip_external_ids(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item and item.strip()]

    def to_options(self) -> RunOptions:
        return RunOptions(
            ids=list(self.ids),
            external_ids=list(self.external_ids),
            retry_pending=self.retry_pending,
            pending_limit=self.pending_limit,
            drain_all=self.drain_all,
            provider=self.provider,
            model=self.model,
        )


class BucketScanOut(BaseModel):
    bucket: str
    scraped: int
    new: int
    inserted: int
    failed_chunks: int
    cache_updated: bool


class RunResponse(BaseModel):
    ok: bool = True
    mode: str
    provider: str
    model: str
    scanned: int = 0
    inserted: int = 0
    matched: int = 0
    buckets: list[BucketScanOut] = Field(default_factory=list)
    dispatch: dict[str, Any] | None = None
    drain: dict[str, Any] | None = None
