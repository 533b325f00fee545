from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from plugingate.services.usage import UsageDecision


class PluginGateError(Exception):
    """Base error for plugingate."""


class ConfigurationDefectError(PluginGateError):
    """Required seed data or settings are missing; never substitute a hardcoded value."""


class DatabaseError(PluginGateError):
    """Database layer failure."""


class TransientStorageError(DatabaseError):
    """Datastore timed out or was unavailable; callers may retry."""


class TokenInvalidError(PluginGateError):
    """Bearer token failed validation."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid token: {reason}")
        self.reason = reason


class UserNotFoundError(PluginGateError):
    """Authenticated subject has no user row."""


class PlanNotFoundError(PluginGateError):
    """Plan slug or price id is not in the registry."""


class QuotaExceededError(PluginGateError):
    """Periodic usage limit reached for the requested action."""

    def __init__(self, action: str, decision: UsageDecision) -> None:
        super().__init__(f"Usage limit reached for {action}")
        self.action = action
        self.decision = decision


class BatchTooLargeError(PluginGateError):
    """Requested batch exceeds the plan's batch ceiling."""

    def __init__(self, requested: int, ceiling: int) -> None:
        super().__init__(f"Batch of {requested} exceeds plan ceiling of {ceiling}")
        self.requested = requested
        self.ceiling = ceiling


class BillingSignatureError(PluginGateError):
    """Webhook payload signature did not verify."""


class BillingEventError(PluginGateError):
    """Billing event could not be applied; the sender should redeliver."""


class HandoffOriginError(PluginGateError):
    """Credential handoff delivered from an unexpected origin."""


class HandoffClosedError(PluginGateError):
    """Credential handoff reached a terminal state without a credential."""

    def __init__(self, state: str) -> None:
        super().__init__(f"Handoff {state}")
        self.state = state
