"""
Builds the object graph shared by the auth, entitlements and gateway services.

Every component takes its collaborators in its constructor; this module is
the only place that knows how they fit together.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from shared.config import DEFAULT_JWT_SECRET, BaseConfig
from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.metrics import get_metrics_collector
from shared.models import utcnow
from shared.repositories import Repositories
from shared.store import KeyValueStore, create_store

from service_auth.app.accounts import AccountService
from service_auth.app.api_keys import ApiKeyService
from service_auth.app.tokens import TokenService
from service_entitlements.app.billing import SubscriptionEventHandler
from service_entitlements.app.catalog import EntitlementCatalog, PolicyProvider
from service_entitlements.app.cleanup import CleanupAuditLog, DowngradeCleanupOrchestrator
from service_entitlements.app.jobs import DowngradeSweepJob
from service_entitlements.app.permissions import PermissionResolver
from service_entitlements.app.subaccounts import SubAccountManager
from service_gateway.app.gate import AccessGate
from service_gateway.app.ratelimit import FixedWindowRateLimiter


@dataclass
class Engine:
    """Every component of the engine, wired over one store."""
    config: BaseConfig
    store: KeyValueStore
    repos: Repositories
    policy: PolicyProvider
    catalog: EntitlementCatalog
    resolver: PermissionResolver
    tokens: TokenService
    accounts: AccountService
    api_keys: ApiKeyService
    subaccounts: SubAccountManager
    rate_limiter: FixedWindowRateLimiter
    gate: AccessGate
    audit: CleanupAuditLog
    orchestrator: DowngradeCleanupOrchestrator
    events: SubscriptionEventHandler
    sweep: DowngradeSweepJob

    async def close(self) -> None:
        await self.store.close()


def build_engine(config: BaseConfig, store: Optional[KeyValueStore] = None,
                 clock: Callable[[], datetime] = utcnow) -> Engine:
    """Wire an engine from configuration. ``store`` and ``clock`` are for tests."""
    logger = get_logger("access_engine")

    if config.env != "local" and config.jwt_secret == DEFAULT_JWT_SECRET:
        raise ConfigurationError(
            "ACCESS_JWT_SECRET must be set outside the local environment", {"env": config.env}
        )

    if store is None:
        store = create_store(config.store_backend, config.redis_url)
    repos = Repositories(store)

    auth_metrics = get_metrics_collector("auth")
    entitlements_metrics = get_metrics_collector("entitlements")
    gateway_metrics = get_metrics_collector("gateway")

    policy = PolicyProvider(config.policy_file)
    catalog = EntitlementCatalog(policy, repos, metrics=entitlements_metrics)
    resolver = PermissionResolver(policy, catalog)

    tokens = TokenService(
        repos,
        resolver,
        secret=config.jwt_secret,
        algorithm=config.jwt_algorithm,
        clock=clock,
        metrics=auth_metrics
    )
    accounts = AccountService(repos, password_scheme=config.password_scheme, clock=clock)
    api_keys = ApiKeyService(repos, catalog, clock=clock)
    subaccounts = SubAccountManager(repos, tokens=tokens, cas_retries=config.store_cas_retries, clock=clock)

    rate_limiter = FixedWindowRateLimiter(
        store,
        catalog,
        window_seconds=config.rate_limit_window_seconds,
        cas_retries=config.store_cas_retries,
        clock=clock,
        metrics=gateway_metrics
    )
    gate = AccessGate(tokens, api_keys, resolver, rate_limiter, repos, metrics=gateway_metrics)

    audit = CleanupAuditLog(store)
    orchestrator = DowngradeCleanupOrchestrator(catalog, repos, audit, metrics=entitlements_metrics, clock=clock)
    events = SubscriptionEventHandler(repos, orchestrator, cas_retries=config.store_cas_retries, clock=clock)
    sweep = DowngradeSweepJob(repos, events, clock=clock)

    logger.info(
        "Engine built",
        store=type(store).__name__,
        policy_version=policy.current.version,
        policy_source=policy.current.source
    )

    return Engine(
        config=config,
        store=store,
        repos=repos,
        policy=policy,
        catalog=catalog,
        resolver=resolver,
        tokens=tokens,
        accounts=accounts,
        api_keys=api_keys,
        subaccounts=subaccounts,
        rate_limiter=rate_limiter,
        gate=gate,
        audit=audit,
        orchestrator=orchestrator,
        events=events,
        sweep=sweep,
    )
