from fastapi import APIRouter, Depends, HTTPException, Query, status

from obitwatch.core.config import Settings, get_settings
from obitwatch.schemas.posts import PostOut, PostsPage
from obitwatch.services.feed import InvalidCursorError, RecentPostsFeed
from obitwatch.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("", response_model=PostsPage)
async def recent_posts(
    before: str | None = Query(default=None, max_length=200),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> PostsPage:
    feed = RecentPostsFeed(repository, page_size=settings.feed_page_size)
    try:
        page = await feed.page(before)
    except InvalidCursorError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PostsPage(
        count=len(page.items),
        items=[PostOut(**item) for item in page.items],
        next_before=page.next_before,
        has_more=page.has_more,
    )
