"""
Identity — who is calling, as established by the platform.

Tenant and user in a request body are claims. A gateway provider trusts
only the headers its upstream gateway sets after authentication, and
rejects a body that claims anyone else.
"""

import logging
from typing import Mapping, Optional, Protocol

from pydantic import BaseModel

from intent_engine.models.errors import IdentityMismatch

logger = logging.getLogger("intent-engine.identity")

TENANT_HEADER = "x-tenant-id"
USER_HEADER = "x-user-id"


class CallerIdentity(BaseModel):
    tenant_id: str
    user_id: str


class IdentityProvider(Protocol):
    def resolve(
        self,
        headers: Mapping[str, str],
        claimed_tenant: Optional[str],
        claimed_user: Optional[str],
    ) -> CallerIdentity:
        ...


class GatewayHeaderIdentityProvider:
    """Trusts X-Tenant-Id / X-User-Id set by the authenticating gateway."""

    def resolve(
        self,
        headers: Mapping[str, str],
        claimed_tenant: Optional[str],
        claimed_user: Optional[str],
    ) -> CallerIdentity:
        lowered = {k.lower(): v for k, v in headers.items()}
        tenant = lowered.get(TENANT_HEADER)
        user = lowered.get(USER_HEADER)
        if not tenant or not user:
            raise IdentityMismatch("Caller identity headers are missing")

        if (claimed_tenant and claimed_tenant != tenant) or (
            claimed_user and claimed_user != user
        ):
            logger.warning("Request body identity does not match authenticated caller")
            raise IdentityMismatch("Request identity does not match the authenticated caller")
        return CallerIdentity(tenant_id=tenant, user_id=user)


class StaticIdentityProvider:
    """Trusts the body claims. Development and tests only."""

    def resolve(
        self,
        headers: Mapping[str, str],
        claimed_tenant: Optional[str],
        claimed_user: Optional[str],
    ) -> CallerIdentity:
        if not claimed_tenant or not claimed_user:
            raise IdentityMismatch("tenantId and userId are required")
        return CallerIdentity(tenant_id=claimed_tenant, user_id=claimed_user)


def build_identity_provider(mode: str) -> IdentityProvider:
    if mode == "gateway":
        return GatewayHeaderIdentityProvider()
    if mode == "static":
        return StaticIdentityProvider()
    raise ValueError(f"Unknown identity mode: {mode}")
