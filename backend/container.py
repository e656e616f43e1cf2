"""
Wiring of the Hestia collaborators for the backend.
"""

from dataclasses import dataclass
from typing import Optional

import redis
from loguru import logger

from core.hestia.config import AppConfig
from core.hestia.coordinator import InMemoryLeaseStore, JobCoordinator, JobKind, RedisLeaseStore
from core.hestia.devices import HomeAssistantScheduleApplier, LongLivedTokenRefresher
from core.hestia.ha_client import HAClient
from core.hestia.jobs import DailyBatchJob, JobScheduler, PriceRefreshJob, ScheduleComputeJob, TokenRefreshJob
from core.hestia.prices import HomeAssistantPriceSource, PriceFeed
from core.hestia.repositories import FlexibleStateRepository, HistoryRepository, SettingsRepository
from core.hestia.service import ScheduleService


@dataclass
class Container:
    config: AppConfig
    ha_client: Optional[HAClient]
    settings_repository: SettingsRepository
    state_repository: FlexibleStateRepository
    history_repository: HistoryRepository
    price_feed: PriceFeed
    service: ScheduleService
    coordinator: JobCoordinator
    scheduler: JobScheduler


def build_container(config: AppConfig, price_source=None, applier=None, token_refresher=None) -> Container:
    """Build every collaborator from the configuration.

    Args:
        config: Loaded AppConfig
        price_source: Override for the Home Assistant price source (tests)
        applier: Override for the Home Assistant schedule applier (tests)
        token_refresher: Override for the token refresher
    """
    ha_client = HAClient(config.ha_url, config.ha_token) if config.ha_token else None
    if ha_client is None:
        logger.warning("HA_TOKEN not set, price fetching and apply are disabled")

    if price_source is None and ha_client is not None:
        price_source = HomeAssistantPriceSource(ha_client, config.price_sensors, config.timezone)
    if applier is None and ha_client is not None:
        applier = HomeAssistantScheduleApplier(
            ha_client,
            entities=config.device_entities,
            default_entity=config.device_default_entity,
            modes=config.device_modes,
        )
    token_refresher = token_refresher or LongLivedTokenRefresher()

    if config.lease_store == "redis":
        store = RedisLeaseStore(redis.Redis.from_url(config.redis_url, decode_responses=True))
        logger.info("Using redis lease store")
    else:
        store = InMemoryLeaseStore()

    settings_repository = SettingsRepository(defaults=config.schedule_defaults)
    for user_id, settings in config.users.items():
        settings_repository.save(user_id, settings)
    state_repository = FlexibleStateRepository()
    history_repository = HistoryRepository()

    price_feed = PriceFeed(
        price_source,
        timezone=config.timezone,
        max_age_minutes=config.price_max_age_minutes,
        publish_hour=config.publish_hour,
    )
    service = ScheduleService(
        settings_repository,
        state_repository,
        history_repository,
        price_feed,
        applier=applier,
        token_refresher=token_refresher,
        default_zone=config.default_zone,
    )
    coordinator = JobCoordinator(store, lease_seconds=config.lease_seconds)
    jobs = {
        JobKind.PRICE_REFRESH: PriceRefreshJob(price_feed, settings_repository, config.default_zone),
        JobKind.SCHEDULE_COMPUTE: ScheduleComputeJob(service, price_feed, settings_repository),
        JobKind.TOKEN_REFRESH: TokenRefreshJob(token_refresher, settings_repository),
        JobKind.DAILY_BATCH: DailyBatchJob(
            service,
            price_feed,
            settings_repository,
            history_repository,
            config.default_zone,
            timezone=config.timezone,
            window_start=config.daily_window_start,
            window_minutes=config.daily_window_minutes,
            history_retention_days=config.history_retention_days,
        ),
    }
    scheduler = JobScheduler(coordinator, jobs, intervals=config.job_intervals)

    return Container(
        config=config,
        ha_client=ha_client,
        settings_repository=settings_repository,
        state_repository=state_repository,
        history_repository=history_repository,
        price_feed=price_feed,
        service=service,
        coordinator=coordinator,
        scheduler=scheduler,
    )
