"""
Billing Service Wiring

Builds the billing components from settings. Every collaborator can be
passed in explicitly, which is how tests swap in in-memory stores and a
fake provider.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from app.config.settings import Settings, get_settings
from app.domain.interfaces import (
    IProviderClient,
    ISubscriptionRepository,
    IUsageLedgerRepository,
    IUserStore,
    IWebhookEventLog,
)
from app.domain.plan_catalog import IPlanCatalog, StaticPlanCatalog
from app.domain.subscription import PlanLimits
from app.infrastructure.concurrency import KeyedLock
from app.infrastructure.db.repositories import (
    SubscriptionRepository,
    UsageLedgerRepository,
    UserRepository,
    WebhookEventRepository,
)
from app.infrastructure.payments import EventVerifier, StripeService
from app.infrastructure.services.event_router import BillingEventRouter
from app.infrastructure.services.projection_updater import ProjectionUpdater
from app.infrastructure.services.quota_enforcer import QuotaEnforcer
from app.infrastructure.services.reconciler import SubscriptionReconciler
from app.infrastructure.services.subscription_store import SubscriptionStore


logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    """Fully wired billing components sharing one set of stores and locks."""
    settings: Settings
    catalog: IPlanCatalog
    provider: IProviderClient
    subscriptions: ISubscriptionRepository
    ledgers: IUsageLedgerRepository
    users: IUserStore
    event_log: IWebhookEventLog
    verifier: EventVerifier
    projections: ProjectionUpdater
    store: SubscriptionStore
    router: BillingEventRouter
    quota: QuotaEnforcer
    reconciler: SubscriptionReconciler


def build_catalog(settings: Settings) -> StaticPlanCatalog:
    return StaticPlanCatalog(
        price_tiers=settings.price_tiers,
        free_limits=PlanLimits(
            images_per_month=settings.free_images_per_month,
            models_per_month=settings.free_models_per_month,
            storage_gb=settings.free_storage_gb,
        ),
    )


def build_billing_services(
    settings: Optional[Settings] = None,
    *,
    catalog: Optional[IPlanCatalog] = None,
    provider: Optional[IProviderClient] = None,
    subscriptions: Optional[ISubscriptionRepository] = None,
    ledgers: Optional[IUsageLedgerRepository] = None,
    users: Optional[IUserStore] = None,
    event_log: Optional[IWebhookEventLog] = None,
    verifier: Optional[EventVerifier] = None,
) -> BillingServices:
    """
    Wire the billing engine.

    Args:
        settings: Settings to read; the process settings by default
        catalog, provider, subscriptions, ledgers, users, event_log,
        verifier: Optional replacements for the default implementations
    """
    settings = settings or get_settings()

    catalog = catalog or build_catalog(settings)
    provider = provider or StripeService(
        api_key=settings.stripe_secret_key,
        timeout_seconds=settings.stripe_request_timeout_seconds,
    )
    subscriptions = subscriptions or SubscriptionRepository()
    ledgers = ledgers or UsageLedgerRepository()
    users = users or UserRepository()
    event_log = event_log or WebhookEventRepository(
        processing_timeout_seconds=settings.webhook_processing_timeout_seconds,
    )
    verifier = verifier or EventVerifier(
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        supported_api_versions=settings.stripe_supported_api_versions,
    )

    projections = ProjectionUpdater(
        subscriptions,
        users,
        catalog,
        max_attempts=settings.projection_retry_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )
    store = SubscriptionStore(
        subscriptions,
        users,
        catalog,
        projections=projections,
        locks=KeyedLock("subscription"),
        max_attempts=settings.max_retries,
    )
    router = BillingEventRouter(store, provider, subscriptions, users, event_log, catalog)
    quota = QuotaEnforcer(
        subscriptions,
        ledgers,
        catalog,
        locks=KeyedLock("quota"),
        max_attempts=settings.quota_max_attempts,
    )
    reconciler = SubscriptionReconciler(store, provider, subscriptions, users, projections)

    logger.info(f"Billing services ready ({len(settings.price_tiers)} configured price ids)")

    return BillingServices(
        settings=settings,
        catalog=catalog,
        provider=provider,
        subscriptions=subscriptions,
        ledgers=ledgers,
        users=users,
        event_log=event_log,
        verifier=verifier,
        projections=projections,
        store=store,
        router=router,
        quota=quota,
        reconciler=reconciler,
    )
