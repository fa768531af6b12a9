"""
Guardrail Enforcer - pre-flight checks run before any node executes.

Guardrails run in declaration order and the first one that fails aborts the
execution with a GuardrailViolation naming the guardrail and the reason.
Disabled guardrails are skipped.

Supported types and their config keys:

- input_validation: required (default True), required_fields, max_length
- rate_limit: requests_per_second (1.0), burst_size (10), scope ("app" | "caller")
- content_safety: blocked_terms
- data_privacy: allowed_regions, blocked_regions, region_field ("country"),
  require_geo_context, require_consent
"""

import logging
from typing import Any

from appflow.errors import GuardrailViolation
from appflow.graph.context import to_text
from appflow.runtime.rate_limiter import TokenBucketLimiter
from appflow.schemas.app import Guardrail, GuardrailType

logger = logging.getLogger(__name__)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


class GuardrailEnforcer:
    """
    Applies an app's guardrails to an execution request.

    The enforcer owns the rate limit buckets, so a single instance should be
    shared by every execution of the runtime.
    """

    def __init__(self, limiter: TokenBucketLimiter | None = None):
        self.limiter = limiter or TokenBucketLimiter()

    def apply(
        self,
        guardrails: list[Guardrail],
        input: Any,
        geo_context: dict[str, Any] | None = None,
        user_profile: dict[str, Any] | None = None,
        app_id: str = "",
        caller_id: str | None = None,
    ) -> None:
        """Raise GuardrailViolation for the first enabled guardrail that fails."""
        for guardrail in guardrails:
            if not guardrail.enabled:
                continue
            config = guardrail.config or {}

            if guardrail.type == GuardrailType.INPUT_VALIDATION:
                self._check_input(config, input)
            elif guardrail.type == GuardrailType.RATE_LIMIT:
                self._check_rate_limit(config, app_id, caller_id, user_profile)
            elif guardrail.type == GuardrailType.CONTENT_SAFETY:
                self._check_content(config, input)
            elif guardrail.type == GuardrailType.DATA_PRIVACY:
                self._check_privacy(config, geo_context, user_profile)

    def _check_input(self, config: dict[str, Any], input: Any) -> None:
        if config.get("required", True) and _is_empty(input):
            raise GuardrailViolation(GuardrailType.INPUT_VALIDATION, "Input is required")

        required_fields = config.get("required_fields") or []
        if required_fields:
            if not isinstance(input, dict):
                raise GuardrailViolation(
                    GuardrailType.INPUT_VALIDATION,
                    f"Input must be an object with fields: {', '.join(required_fields)}",
                )
            missing = [name for name in required_fields if name not in input]
            if missing:
                raise GuardrailViolation(
                    GuardrailType.INPUT_VALIDATION,
                    f"Missing required input fields: {', '.join(missing)}",
                )

        max_length = config.get("max_length")
        if max_length is not None and input is not None:
            length = len(to_text(input))
            if length > int(max_length):
                raise GuardrailViolation(
                    GuardrailType.INPUT_VALIDATION,
                    f"Input length {length} exceeds maximum of {max_length}",
                )

    def _check_rate_limit(
        self,
        config: dict[str, Any],
        app_id: str,
        caller_id: str | None,
        user_profile: dict[str, Any] | None,
    ) -> None:
        scope = config.get("scope", "app")
        if scope == "caller":
            caller = caller_id or (user_profile or {}).get("id") or "anonymous"
            key = f"{app_id}:caller:{caller}"
        else:
            key = f"{app_id}:app"

        result = self.limiter.check(
            key,
            requests_per_second=float(config.get("requests_per_second", 1.0)),
            burst_size=int(config.get("burst_size", 10)),
        )
        if not result.allowed:
            retry = f"; retry after {result.retry_after:.2f}s" if result.retry_after else ""
            raise GuardrailViolation(GuardrailType.RATE_LIMIT, f"Rate limit exceeded{retry}")

    def _check_content(self, config: dict[str, Any], input: Any) -> None:
        blocked_terms = config.get("blocked_terms") or []
        if not blocked_terms or input is None:
            return
        text = to_text(input).lower()
        for term in blocked_terms:
            if term and str(term).lower() in text:
                raise GuardrailViolation(
                    GuardrailType.CONTENT_SAFETY,
                    f"Input contains blocked content: '{term}'",
                )

    def _check_privacy(
        self,
        config: dict[str, Any],
        geo_context: dict[str, Any] | None,
        user_profile: dict[str, Any] | None,
    ) -> None:
        if config.get("require_consent") and not (user_profile or {}).get("data_consent"):
            raise GuardrailViolation(
                GuardrailType.DATA_PRIVACY,
                "User has not consented to data processing",
            )

        allowed = config.get("allowed_regions") or []
        blocked = config.get("blocked_regions") or []
        if not (allowed or blocked or config.get("require_geo_context")):
            return

        region_field = config.get("region_field", "country")
        region = (geo_context or {}).get(region_field)
        if region is None:
            if config.get("require_geo_context") or allowed:
                raise GuardrailViolation(
                    GuardrailType.DATA_PRIVACY,
                    f"Geo context with '{region_field}' is required",
                )
            return

        normalized = str(region).upper()
        if blocked and normalized in {str(r).upper() for r in blocked}:
            raise GuardrailViolation(
                GuardrailType.DATA_PRIVACY,
                f"Processing is not permitted for region '{region}'",
            )
        if allowed and normalized not in {str(r).upper() for r in allowed}:
            raise GuardrailViolation(
                GuardrailType.DATA_PRIVACY,
                f"Region '{region}' is not in the allowed regions",
            )
