from fastapi import Depends, Request

from obitwatch.core.config import Settings, get_settings
from obitwatch.core.keys import KeyManager
from obitwatch.services.classifier import ClassificationOrchestrator
from obitwatch.services.dedup import DedupCache
from obitwatch.services.drain import PendingDrain
from obitwatch.services.notifier import CompositeNotifier, Notifier, TelegramNotifier, XNotifier, parse_chat_ids
from obitwatch.services.pipeline import Pipeline
from obitwatch.services.providers import ClassificationProvider, build_providers
from obitwatch.services.rate_limit import RateLimiter
from obitwatch.services.repository import get_repository
from obitwatch.services.source import SourceClient
from obitwatch.services.subscriptions import SubscriptionService
from obitwatch.services.token_vault import TokenVault
from obitwatch.services.verdicts import VerdictReconciler


def get_key_manager(request: Request) -> KeyManager:
    key_manager = getattr(request.app.state, "key_manager", None)
    if key_manager is None:
        key_manager = KeyManager.from_base64(get_settings().token_encryption_key)
        request.app.state.key_manager = key_manager
    return key_manager


def get_providers(settings: Settings = Depends(get_settings)) -> dict[str, ClassificationProvider]:
    return build_providers(settings)


def get_source_client(settings: Settings = Depends(get_settings)) -> SourceClient:
    return SourceClient(
        url_template=settings.source_url_template,
        user_agent=settings.source_user_agent,
        timeout_seconds=settings.fetch_timeout_seconds,
        retries=settings.fetch_retries,
        backoff_seconds=settings.fetch_backoff_seconds,
    )


def get_telegram_bot(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> TelegramNotifier | None:
    if not settings.telegram_bot_token:
        return None
    return TelegramNotifier(
        bot_token=settings.telegram_bot_token,
        chat_ids=parse_chat_ids(settings.telegram_chat_ids),
        subscribers=repository,
        api_base_url=settings.telegram_api_base_url,
        timeout_seconds=settings.fetch_timeout_seconds,
    )


def get_subscriptions(repository=Depends(get_repository)) -> SubscriptionService:
    return SubscriptionService(repository)


def get_notifier(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    key_manager: KeyManager = Depends(get_key_manager),
    telegram: TelegramNotifier | None = Depends(get_telegram_bot),
) -> Notifier | None:
    channels: list[Notifier] = []
    if telegram is not None:
        channels.append(telegram)
    if settings.x_client_id and key_manager.enabled:
        vault = TokenVault(
            repository,
            key_manager,
            token_url=settings.x_token_url,
            client_id=settings.x_client_id,
            client_secret=settings.x_client_secret,
            refresh_margin_seconds=settings.token_refresh_margin_seconds,
        )
        channels.append(XNotifier(vault=vault, tweet_url=settings.x_tweet_url))
    if not channels:
        return None
    return CompositeNotifier(channels)


def get_reconciler(
    repository=Depends(get_repository),
    notifier: Notifier | None = Depends(get_notifier),
) -> VerdictReconciler:
    return VerdictReconciler(repository, notifier)


def get_rate_limiter(repository=Depends(get_repository)) -> RateLimiter:
    return RateLimiter(repository)


def get_pipeline(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    source: SourceClient = Depends(get_source_client),
    providers: dict[str, ClassificationProvider] = Depends(get_providers),
    reconciler: VerdictReconciler = Depends(get_reconciler),
) -> Pipeline:
    orchestrator = ClassificationOrchestrator(reconciler)
    return Pipeline(
        settings=settings,
        repository=repository,
        source=source,
        dedup=DedupCache(repository, lock_ttl_seconds=settings.lock_ttl_seconds),
        providers=providers,
        orchestrator=orchestrator,
        drain=PendingDrain(repository, orchestrator),
    )
