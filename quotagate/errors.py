"""
Error kinds raised by the admission, job store and dispatch layers.

Every error carries a stable ``code`` (rendered to API clients) and the HTTP
status the API answers with. Routes never catch these; the handler registered
in ``quotagate.main`` renders them.
"""

from typing import Iterable, Optional


class GateError(Exception):
    """Base exception for all admission and dispatch failures."""

    code = "GateError"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NoActiveSubscription(GateError):
    code = "NoActiveSubscription"
    status_code = 403

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No active subscription for user {user_id}")


class NoEntitlement(GateError):
    """Raised when a plan has no entitlement version, or an unusable one."""

    code = "NoEntitlement"
    status_code = 403

    def __init__(self, plan_code: str, reason: str = "no entitlement versions"):
        self.plan_code = plan_code
        super().__init__(f"Plan {plan_code}: {reason}")


class UnknownProcessor(GateError):
    code = "UnknownProcessor"
    status_code = 400

    def __init__(self, names: Iterable[str]):
        self.names = sorted(names)
        super().__init__(f"Unknown processor(s): {', '.join(self.names)}")


class ExceedsProcessorCount(GateError):
    code = "ExceedsProcessorCount"
    status_code = 403

    def __init__(self, requested: int, limit: int):
        super().__init__(f"{requested} processors requested, plan allows {limit} per job")


class ExceedsJobWeight(GateError):
    code = "ExceedsJobWeight"
    status_code = 403

    def __init__(self, weight: int, limit: int):
        super().__init__(f"Job weight {weight} exceeds max_weight_per_job = {limit}")


class QuotaExceeded(GateError):
    code = "QuotaExceeded"
    status_code = 403

    def __init__(self, used: Optional[int], weight: int, quota: int):
        if used is None:
            super().__init__(f"Daily quota exceeded: weight {weight} does not fit in quota {quota}")
        else:
            super().__init__(f"Daily quota exceeded: used {used} + weight {weight} > quota {quota}")


class ExceedsMediaLimit(GateError):
    code = "ExceedsMediaLimit"
    status_code = 403


class DispatchError(GateError):
    """Raised after the job row exists, when the queue refused the descriptor."""

    code = "DispatchError"
    status_code = 502

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Dispatch failed for job {job_id}: {reason}")


class AuthError(GateError):
    code = "AuthError"
    status_code = 401

    def __init__(self, message: str = "Invalid worker secret"):
        super().__init__(message)


class NotFound(GateError):
    code = "NotFound"
    status_code = 404

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class InvalidTransition(GateError):
    code = "InvalidTransition"
    status_code = 409

    def __init__(self, job_id: str, current_state: str, target_state: str, reason: str = ""):
        self.job_id = job_id
        self.current_state = current_state
        self.target_state = target_state
        message = f"Invalid job state transition for {job_id}: {current_state} -> {target_state}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
