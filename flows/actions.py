"""
Business Action Profiles — preconditions for side-effecting nodes.

A business-action node (reschedule, cancel, book...) must pass its
preconditions before the external adapter is ever called:

  1. required context fields present      → otherwise route `failure`
  2. attempt counter under its limit       → otherwise LimitExceededError
  3. reason present when require_reason    → otherwise route `needReason`

Each known action kind declares which variables it needs, which counter
tracks its attempts and where the user's reason is stored. Unknown kinds
get the generic profile: no required fields, and a node-level max_attempts
is counted per node.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

from flows.errors import LimitExceededError
from models.schemas import BusinessActionData

logger = structlog.get_logger()

PORT_SUCCESS = "success"
PORT_FAILURE = "failure"
PORT_NEED_REASON = "needReason"

DECLARED_PORTS: tuple[str, ...] = (PORT_SUCCESS, PORT_FAILURE, PORT_NEED_REASON)


@dataclass(frozen=True)
class ActionProfile:
    name: str
    required_fields: tuple[str, ...] = ()
    counter_variable: str = ""                     # variable counting successful attempts
    default_max_attempts: Optional[int] = None
    reason_variable: str = ""                      # where require_reason looks for the reason
    result_flag: str = ""                          # set True in context on success
    need_reason_message: str = "Could you tell us the reason for this change?"
    missing_fields_message: str = "I don't have the information needed to complete this request."
    limit_message: str = "You have reached the maximum number of attempts for this request."


PROFILES: dict[str, ActionProfile] = {
    p.name: p for p in (
        ActionProfile(
            name="reschedule-appointment",
            required_fields=("appointmentId",),
            counter_variable="rescheduleCount",
            default_max_attempts=3,
            reason_variable="rescheduleReason",
            result_flag="appointmentRescheduled",
            need_reason_message="Could you tell us why you need to reschedule your appointment?",
            missing_fields_message=(
                "I don't have the details of the appointment you want to reschedule. "
                "Please share the appointment reference."
            ),
            limit_message=(
                "This appointment has already been rescheduled the maximum number of times. "
                "Please contact us directly."
            ),
        ),
        ActionProfile(
            name="cancel-appointment",
            required_fields=("appointmentId",),
            reason_variable="cancellationReason",
            result_flag="appointmentCancelled",
            need_reason_message=(
                "Could you tell us why you want to cancel the appointment? "
                "It helps us improve our service."
            ),
            missing_fields_message=(
                "I don't have the information of the appointment you want to cancel. "
                "Please share the appointment reference."
            ),
        ),
        ActionProfile(name="book-appointment", result_flag="appointmentBooked"),
        ActionProfile(name="check-availability", result_flag="availabilityChecked"),
        ActionProfile(name="lead-qualification", result_flag="leadQualified"),
    )
}

GENERIC_PROFILE = ActionProfile(name="generic")


def normalize_action_name(name: str) -> str:
    return (name or "").strip().lower().replace("_", "-")


def get_profile(action: str) -> ActionProfile:
    return PROFILES.get(normalize_action_name(action), GENERIC_PROFILE)


@dataclass(frozen=True)
class PreconditionFailure:
    """A precondition short-circuited the action; the node routes to `port`."""
    port: str
    message: str
    reason: str


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def counter_variable_for(
    profile: ActionProfile,
    data: BusinessActionData,
    node_id: str = "",
) -> str:
    """
    Variable counting successful attempts. Kinds without their own counter
    get a per-node one as soon as the node configures max_attempts.
    """
    if profile.counter_variable:
        return profile.counter_variable
    if data.max_attempts is not None and node_id:
        return f"{node_id}_attempts"
    return ""


def attempts_so_far(counter: str, variables: dict[str, Any]) -> int:
    if not counter:
        return 0
    try:
        return int(variables.get(counter, 0) or 0)
    except (TypeError, ValueError):
        return 0


def max_attempts_for(profile: ActionProfile, data: BusinessActionData) -> Optional[int]:
    if data.max_attempts is not None:
        return data.max_attempts
    return profile.default_max_attempts


def check_preconditions(
    profile: ActionProfile,
    data: BusinessActionData,
    variables: dict[str, Any],
    node_id: str = "",
) -> Optional[PreconditionFailure]:
    """
    Validate a business-action node before calling its adapter.

    Returns None when the action may proceed, or a PreconditionFailure
    naming the port to take. Raises LimitExceededError when the attempt
    counter has reached the configured maximum.
    """
    required = data.required_fields if data.required_fields is not None else profile.required_fields
    missing = [f for f in required if _is_blank(variables.get(f))]
    if missing:
        logger.info("business_action_missing_fields",
                    node_id=node_id, action=profile.name, missing=missing)
        return PreconditionFailure(
            port=PORT_FAILURE,
            message=data.failure_message or profile.missing_fields_message,
            reason="missing_fields",
        )

    limit = max_attempts_for(profile, data)
    counter = counter_variable_for(profile, data, node_id)
    if limit is not None and counter:
        attempts = attempts_so_far(counter, variables)
        if attempts >= limit:
            raise LimitExceededError(node_id=node_id, attempts=attempts, limit=limit)

    if data.require_reason:
        reason_var = profile.reason_variable or "reason"
        if _is_blank(variables.get(reason_var)):
            return PreconditionFailure(
                port=PORT_NEED_REASON,
                message=profile.need_reason_message,
                reason="reason_required",
            )

    return None


def success_patch(
    profile: ActionProfile,
    data: BusinessActionData,
    variables: dict[str, Any],
    node_id: str = "",
) -> dict[str, Any]:
    """Counter and result-flag updates applied after a successful action."""
    patch: dict[str, Any] = {}
    counter = counter_variable_for(profile, data, node_id)
    if counter:
        patch[counter] = attempts_so_far(counter, variables) + 1
    if profile.result_flag:
        patch[profile.result_flag] = True
    return patch
