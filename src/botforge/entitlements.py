"""Entitlement hooks consulted around deploy.

Billing lives elsewhere; the orchestrator only asks whether a user may
deploy and reports a successful deploy so the owner can be charged.
"""

from typing import Protocol

from botforge.models import DeploymentRecord


class EntitlementChecker(Protocol):
    async def can_user_deploy(self, user_id: str) -> bool: ...

    async def record_deploy(self, user_id: str, record: DeploymentRecord) -> None: ...


class AllowAllEntitlements:
    """Everyone may deploy; nothing is charged."""

    async def can_user_deploy(self, user_id: str) -> bool:
        return True

    async def record_deploy(self, user_id: str, record: DeploymentRecord) -> None:
        return None
