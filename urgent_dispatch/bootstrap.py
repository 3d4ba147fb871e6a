# urgent_dispatch/bootstrap.py
"""
Composition root: builds the dispatch service from settings.

    app = build_dispatch_app()
    await app.startup()
    ...
    await app.shutdown()

Every collaborator can be overridden by keyword, which is how tests and
embedding applications swap in their own stores or gateways.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from urgent_dispatch.config import Settings, settings as default_settings
from urgent_dispatch.core.geo_index import GeoIndex, GeoIndexPolicy
from urgent_dispatch.core.matching import MatchingEngine, MatchingPolicy
from urgent_dispatch.core.orchestrator import DispatchOrchestrator, DispatchPolicy
from urgent_dispatch.core.ports import (
    AsyncPricingRuleStore,
    AsyncProfessionalDirectory,
    AsyncUrgentRequestStore,
    DispatchScheduler,
    GeoCache,
    NotificationGateway,
    RealtimeGateway,
)
from urgent_dispatch.core.pricing import PricingPolicy, UrgentPricing
from urgent_dispatch.core.stats import DispatchStatistics
from urgent_dispatch.infra.db_async import close_pool, init_pool
from urgent_dispatch.infra.dispatch_scheduler import InProcessDispatchScheduler, JobQueueDispatchScheduler
from urgent_dispatch.infra.geo_cache import InMemoryTTLCache
from urgent_dispatch.infra.http_client import close_all_sessions
from urgent_dispatch.infra.job_worker import JOB_DISPATCH_URGENT_REQUEST, JobWorker, make_dispatch_handler
from urgent_dispatch.infra.logging_config import get_logger
from urgent_dispatch.infra.migrations_async import apply_migrations
from urgent_dispatch.infra.pg_job_repo_async import AsyncPostgresJobRepository
from urgent_dispatch.infra.pg_notification_repo_async import AsyncPostgresNotificationGateway
from urgent_dispatch.infra.pg_pricing_repo_async import AsyncPostgresPricingRuleStore
from urgent_dispatch.infra.pg_professional_directory_async import AsyncPostgresProfessionalDirectory
from urgent_dispatch.infra.pg_urgent_repo_async import AsyncPostgresUrgentRequestStore
from urgent_dispatch.infra.realtime_gateway import NullRealtimeGateway, WebhookRealtimeGateway

logger = get_logger(__name__)

CACHE_CLEANUP_EVERY_LOOPS = 300
JOB_CLEANUP_EVERY_LOOPS = 3600


@dataclass
class DispatchApp:
    settings: Settings
    store: AsyncUrgentRequestStore
    directory: AsyncProfessionalDirectory
    cache: GeoCache
    geo: GeoIndex
    matching: MatchingEngine
    pricing: UrgentPricing
    orchestrator: DispatchOrchestrator
    statistics: DispatchStatistics
    scheduler: DispatchScheduler
    job_repo: AsyncPostgresJobRepository
    worker: Optional[JobWorker] = None
    use_database: bool = True

    async def startup(self, *, migrate: bool = False) -> None:
        if self.use_database:
            await init_pool()
            if migrate:
                result = await apply_migrations()
                logger.info(f"Migrations applied: {result['applied'] or 'none'}")
        if self.worker is not None:
            await self.worker.start()
        logger.info(
            f"Dispatch service started: env={self.settings.app_env}, "
            f"dispatch_mode={self.settings.dispatch_mode}, worker={'on' if self.worker else 'off'}"
        )

    async def shutdown(self) -> None:
        if self.worker is not None:
            await self.worker.stop()
        if isinstance(self.scheduler, InProcessDispatchScheduler):
            await self.scheduler.drain()
        await self.orchestrator.drain_side_channels()
        await close_all_sessions()
        if self.use_database:
            await close_pool()
        logger.info("Dispatch service stopped")


def _build_realtime(s: Settings) -> RealtimeGateway:
    if s.realtime_webhook_url:
        return WebhookRealtimeGateway(s.realtime_webhook_url, token=s.realtime_webhook_token)
    return NullRealtimeGateway()


def build_worker(s: Settings, job_repo: AsyncPostgresJobRepository, orchestrator: DispatchOrchestrator,
                 geo: GeoIndex) -> JobWorker:
    worker = JobWorker(
        job_repo,
        poll_interval=s.job_worker_poll_interval,
        batch_size=s.job_worker_batch_size,
        base_retry_delay=s.job_worker_base_retry_delay,
        stale_timeout=s.job_worker_stale_timeout,
    )
    worker.register(JOB_DISPATCH_URGENT_REQUEST, make_dispatch_handler(orchestrator))

    if s.candidate_response_timeout_seconds > 0:
        worker.every(s.candidate_sweep_every_loops, "candidate_expiry", orchestrator.expire_unresponsive_candidates)

    async def cleanup_cache() -> int:
        return geo.cleanup_expired_cache()

    async def cleanup_jobs() -> int:
        return await job_repo.cleanup_finished(
            completed_ttl_days=s.job_cleanup_completed_ttl_days,
            failed_ttl_days=s.job_cleanup_failed_ttl_days,
        )

    worker.every(CACHE_CLEANUP_EVERY_LOOPS, "geo_cache_cleanup", cleanup_cache)
    worker.every(JOB_CLEANUP_EVERY_LOOPS, "job_cleanup", cleanup_jobs)
    return worker


def build_dispatch_app(
    s: Settings | None = None,
    *,
    store: AsyncUrgentRequestStore | None = None,
    directory: AsyncProfessionalDirectory | None = None,
    pricing_rules: AsyncPricingRuleStore | None = None,
    notifications: NotificationGateway | None = None,
    realtime: RealtimeGateway | None = None,
    cache: GeoCache | None = None,
    job_repo: AsyncPostgresJobRepository | None = None,
    with_worker: bool | None = None,
    use_database: bool = True,
) -> DispatchApp:
    s = s or default_settings

    store = store or AsyncPostgresUrgentRequestStore()
    directory = directory or AsyncPostgresProfessionalDirectory()
    pricing_rules = pricing_rules or AsyncPostgresPricingRuleStore()
    notifications = notifications or AsyncPostgresNotificationGateway(enabled=s.notifications_enabled)
    realtime = realtime or _build_realtime(s)
    cache = cache or InMemoryTTLCache(ttl_seconds=s.geo_cache_ttl_seconds)
    job_repo = job_repo or AsyncPostgresJobRepository()

    geo = GeoIndex(
        directory=directory,
        requests=store,
        cache=cache,
        policy=GeoIndexPolicy.from_settings(s),
    )
    matching = MatchingEngine(geo=geo, policy=MatchingPolicy.from_settings(s))
    pricing = UrgentPricing(rules=pricing_rules, policy=PricingPolicy.from_settings(s))

    if s.dispatch_mode == "inline":
        scheduler: DispatchScheduler = InProcessDispatchScheduler()
    else:
        scheduler = JobQueueDispatchScheduler(job_repo, max_attempts=s.dispatch_job_max_attempts)

    orchestrator = DispatchOrchestrator(
        store=store,
        directory=directory,
        matching=matching,
        pricing=pricing,
        scheduler=scheduler,
        notifications=notifications,
        realtime=realtime,
        policy=DispatchPolicy.from_settings(s),
    )
    if isinstance(scheduler, InProcessDispatchScheduler):
        scheduler.attach(orchestrator.dispatch)

    if with_worker is None:
        with_worker = s.job_worker_enabled
    worker = build_worker(s, job_repo, orchestrator, geo) if with_worker else None

    return DispatchApp(
        settings=s,
        store=store,
        directory=directory,
        cache=cache,
        geo=geo,
        matching=matching,
        pricing=pricing,
        orchestrator=orchestrator,
        statistics=DispatchStatistics(store=store),
        scheduler=scheduler,
        job_repo=job_repo,
        worker=worker,
        use_database=use_database,
    )
