"""
Entitlements service for the Access Engine.
"""

from datetime import datetime
from typing import Optional

from fastapi import Depends

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import NotFoundError, ValidationError
from shared.models import (
    Account, CamelModel, PackType, PrincipalContext, ResourceKind, SubscriptionStatus, Tier,
)

from access_engine.container import Engine, build_engine
from access_engine.dependencies import require_access, require_internal

from .billing import SubscriptionChangeReason

COUNTED_RESOURCES = (ResourceKind.PAGES, ResourceKind.LINKS, ResourceKind.API_KEYS)


class QuotaCheckRequest(CamelModel):
    resource: ResourceKind
    requested_count: int = 1


class SubscriptionChangedRequest(CamelModel):
    account_id: str
    new_tier: Tier
    reason: SubscriptionChangeReason
    subscription_status: Optional[SubscriptionStatus] = None


class PolicyReloadRequest(CamelModel):
    policy_file: Optional[str] = None


class SubAccountCreateRequest(CamelModel):
    type: str = "client"


class PackPurchaseRequest(CamelModel):
    account_id: str
    pack_type: PackType
    expires_at: Optional[datetime] = None


def _account_summary(account: Account) -> dict:
    return {
        "accountId": account.id,
        "role": account.role.value,
        "tier": account.tier.value,
        "packType": account.pack_type.value,
        "packLimit": account.pack_limit,
        "packExpiresAt": account.pack_expires_at.isoformat() if account.pack_expires_at else None,
    }


class EntitlementsService(BaseService):
    """Entitlements service implementation."""

    def __init__(self, engine: Optional[Engine] = None, config: Optional[ServiceConfig] = None):
        super().__init__("entitlements", 8011, config)
        self.engine = engine or build_engine(self.config)
        self.app.state.engine = self.engine
        self._setup_entitlements_routes()

    async def _account(self, account_id: str) -> Account:
        account = await self.engine.repos.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", {"account_id": account_id})
        return account

    def _setup_entitlements_routes(self):
        """Set up entitlements-specific routes."""
        engine = self.engine

        @self.app.get("/entitlements/tier")
        async def get_tier(principal: PrincipalContext = Depends(require_access())):
            """Effective tier of the caller and the limits that come with it."""
            account = await self._account(principal.account_id)
            effective, limits = await engine.catalog.effective_limit(account)
            body = limits.model_dump(mode="json")
            body["allowed_endpoints"] = sorted(limits.allowed_endpoints)
            return {
                "accountId": account.id,
                "tier": effective.tier.value,
                "isInherited": effective.is_inherited,
                "inheritedFromAccountId": effective.inherited_from_account_id,
                "limits": body,
                "policyVersion": engine.policy.current.version,
            }

        @self.app.post("/entitlements/quota/check")
        async def check_quota(request: QuotaCheckRequest,
                              principal: PrincipalContext = Depends(require_access())):
            """Ask whether the caller may create more of a counted resource."""
            if request.resource not in COUNTED_RESOURCES:
                raise ValidationError(
                    f"{request.resource.value} is not a counted resource",
                    {"resource": request.resource.value}
                )
            if request.requested_count < 1:
                raise ValidationError("requestedCount must be positive", {"requestedCount": request.requested_count})

            decision = await engine.catalog.check_resource_quota(
                principal.account_id, request.resource, request.requested_count
            )
            return {
                "allowed": True,
                "resource": decision.resource.value,
                "current": decision.current,
                "limit": decision.limit,
                "remaining": decision.remaining,
                "tier": decision.tier.value,
            }

        @self.app.get("/accounts/sub-accounts")
        async def list_sub_accounts(principal: PrincipalContext = Depends(require_access())):
            relationships = await engine.repos.relationships.owned_by(principal.account_id)
            return {
                "subAccounts": [
                    {
                        "subAccountId": r.sub_account_id,
                        "type": r.type,
                        "status": r.status.value,
                        "createdAt": r.created_at.isoformat(),
                    }
                    for r in relationships
                ]
            }

        @self.app.post("/accounts/sub-accounts", status_code=201)
        async def create_sub_account(request: SubAccountCreateRequest,
                                     principal: PrincipalContext = Depends(require_access())):
            sub_account, relationship = await engine.subaccounts.create_sub_account(
                principal.account_id, request.type
            )
            return {
                "subAccountId": sub_account.id,
                "parentAccountId": relationship.parent_account_id,
                "type": relationship.type,
            }

        @self.app.delete("/accounts/sub-accounts/{sub_account_id}")
        async def delete_sub_account(sub_account_id: str,
                                     principal: PrincipalContext = Depends(require_access())):
            await engine.subaccounts.delete_sub_account(principal.account_id, sub_account_id)
            return {}

        @self.app.post("/internal/billing/subscription-changed", dependencies=[Depends(require_internal)])
        async def subscription_changed(request: SubscriptionChangedRequest):
            """Billing webhook fan-in: apply the tier and clean up or reinstate."""
            result = await engine.events.notify_subscription_changed(
                request.account_id, request.new_tier, request.reason, request.subscription_status
            )
            return result.to_dict()

        @self.app.post("/internal/billing/pack", dependencies=[Depends(require_internal)])
        async def purchase_pack(request: PackPurchaseRequest):
            """Pack bought through the billing collaborator; makes the account an agency admin."""
            account = await engine.subaccounts.purchase_pack(
                request.account_id, request.pack_type, request.expires_at
            )
            return _account_summary(account)

        @self.app.delete("/internal/billing/pack/{account_id}", dependencies=[Depends(require_internal)])
        async def cancel_pack(account_id: str):
            account = await engine.subaccounts.cancel_pack(account_id)
            return _account_summary(account)

        @self.app.post("/internal/jobs/downgrade-sweep", dependencies=[Depends(require_internal)])
        async def downgrade_sweep():
            stats = await engine.sweep.run_scheduled_cleanup()
            return stats.to_dict()

        @self.app.post("/internal/cleanup/{account_id}", dependencies=[Depends(require_internal)])
        async def manual_cleanup(account_id: str):
            """Re-run cleanup for one account against its current tier."""
            report = await engine.orchestrator.run_cleanup(account_id, trigger="manual")
            return report.to_dict()

        @self.app.get("/internal/cleanup/{account_id}/history", dependencies=[Depends(require_internal)])
        async def cleanup_history(account_id: str):
            return {"reports": await engine.audit.history(account_id)}

        @self.app.post("/internal/policy/reload", dependencies=[Depends(require_internal)])
        async def reload_policy(request: Optional[PolicyReloadRequest] = None):
            snapshot = engine.policy.reload(request.policy_file if request else None)
            return {"version": snapshot.version, "source": snapshot.source}

    async def _check_dependencies(self):
        """Check entitlements dependencies."""
        await self.engine.store.get("health:probe")
        return {"store": "ok", "policy_version": str(self.engine.policy.current.version)}

    async def _shutdown(self):
        await self.engine.close()


def create_app(engine: Optional[Engine] = None):
    """Create FastAPI application."""
    service = EntitlementsService(engine)
    return service.app


if __name__ == "__main__":
    service = EntitlementsService()
    service.run()
