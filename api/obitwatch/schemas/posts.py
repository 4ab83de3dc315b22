from datetime import datetime

from pydantic import BaseModel


class PostOut(BaseModel):
    name: str
    external_id: str
    age: int | None = None
    description: str | None = None
    cause: str | None = None
    posted_at: datetime
    url: str
    html: str


class PostsPage(BaseModel):
    ok: bool = True
    count: int
    items: list[PostOut]
    next_before: str | None = None
    has_more: bool
