"""
Error taxonomy shared by the check-in and import paths.

Every error is an ``HTTPException`` so services can raise it directly and the
routes let it propagate unchanged. ``detail`` is always a dict carrying a
machine-readable ``code`` plus whatever state the client needs to render.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException


class LoyaltyError(HTTPException):
    status_code_default = 400
    code = "Error"

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, **state: Any):
        self.code = code or self.code
        self.message = message
        self.state: Dict[str, Any] = state
        detail = {"code": self.code, "message": message}
        detail.update(state)
        super().__init__(status_code=status_code or self.status_code_default, detail=detail)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# ------------------------------------------------------------
# ValidationError: local, never retried
# ------------------------------------------------------------
class ValidationError(LoyaltyError):
    status_code_default = 400
    code = "ValidationError"


class InvalidPhone(ValidationError):
    code = "InvalidPhone"

    def __init__(self, message: str, *, reason: str, value: Optional[str] = None):
        self.reason = reason
        self.value = value
        super().__init__(message, reason=reason)


# ------------------------------------------------------------
# StateConflict: reported to caller, not retried
# ------------------------------------------------------------
class StateConflict(LoyaltyError):
    status_code_default = 409
    code = "StateConflict"


class InCooldown(StateConflict):
    status_code_default = 429
    code = "InCooldown"


class SubscriptionBlocked(StateConflict):
    status_code_default = 403
    code = "SubscriptionBlocked"


class SubscriptionUnsubscribed(StateConflict):
    status_code_default = 403
    code = "SubscriptionUnsubscribed"


class AgeRequirementNotMet(StateConflict):
    status_code_default = 403
    code = "AgeRequirementNotMet"


class AlreadyRedeemed(StateConflict):
    code = "AlreadyRedeemed"


class Expired(StateConflict):
    code = "Expired"


class RowCeilingExceeded(StateConflict):
    status_code_default = 413
    code = "RowCeilingExceeded"


# ------------------------------------------------------------
# NotFound
# ------------------------------------------------------------
class NotFound(LoyaltyError):
    status_code_default = 404
    code = "NotFound"


# ------------------------------------------------------------
# TransientStoreError: retried by the import worker only
# ------------------------------------------------------------
class TransientStoreError(LoyaltyError):
    status_code_default = 503
    code = "StoreUnavailable"


class RewardCodeExhausted(TransientStoreError):
    code = "RewardCodeExhausted"
