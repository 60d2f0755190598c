"""
Config validation - startup invariants.

INVARIANTS (validated in the startup hook, before accepting traffic):
- C1: at least one durable sink (event log or relational sink)
- C2: db_host/db_user/db_password/db_name all-or-nothing, and never
      together with database_url
- C3: failure_policy is a known policy
- C4: env is in VALID_ENVIRONMENTS
- C5: sink_keepalive_seconds >= 0
"""

from typing import TYPE_CHECKING, Any, Dict, List

from .models import FailurePolicy

if TYPE_CHECKING:
    from .core.config import Settings


# ═══════════════════════════════════════════════════════════════════════════════
# ENVIRONMENT CONFIG
# ═══════════════════════════════════════════════════════════════════════════════


VALID_ENVIRONMENTS = frozenset({"development", "staging", "production"})

VALID_FAILURE_POLICIES = frozenset(p.value for p in FailurePolicy)


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG VALIDATION
# ═══════════════════════════════════════════════════════════════════════════════


class ConfigValidationError(Exception):
    """Raised when config validation fails at startup."""
    pass


def validate_config(settings: "Settings") -> None:
    """
    Validate config invariants at startup.

    MUST be called in the startup hook before the service is built.

    Raises:
        ConfigValidationError: If any invariant is violated (all violations listed)
    """
    errors: List[str] = []

    # C1: something durable must hold every accepted event
    if not settings.event_log_enabled and not settings.relational_sink_enabled:
        errors.append(
            "C1 FAIL: no durable sink configured; set EVENT_LOG_PATH and/or "
            "DATABASE_URL (or DB_HOST/DB_USER/DB_PASSWORD/DB_NAME)"
        )

    # C2: connection quadruple is all-or-nothing and exclusive with database_url
    parts = settings.db_parts
    given = [p for p in parts if p]
    if given and len(given) != len(parts):
        errors.append(
            f"C2 FAIL: db_host/db_user/db_password/db_name must be set together "
            f"({len(given)}/{len(parts)} given)"
        )
    if given and settings.database_url:
        errors.append("C2 FAIL: database_url and db_* parts are mutually exclusive")

    # C3: known failure policy
    if settings.failure_policy not in VALID_FAILURE_POLICIES:
        errors.append(
            f"C3 FAIL: failure_policy ({settings.failure_policy!r}) must be one of "
            f"{sorted(VALID_FAILURE_POLICIES)}"
        )

    # C4: environment whitelist
    if settings.env.lower() not in VALID_ENVIRONMENTS:
        errors.append(
            f"C4 FAIL: env ({settings.env!r}) must be one of {sorted(VALID_ENVIRONMENTS)}"
        )

    # C5: keep-alive interval (0 disables it)
    if settings.sink_keepalive_seconds < 0:
        errors.append(
            f"C5 FAIL: sink_keepalive_seconds ({settings.sink_keepalive_seconds}) must be >= 0"
        )

    if errors:
        raise ConfigValidationError(
            f"Config validation failed with {len(errors)} error(s):\n" +
            "\n".join(f"  - {e}" for e in errors)
        )


def get_config_summary(settings: "Settings") -> Dict[str, Any]:
    """
    Config summary for the /health/ready endpoint. Never includes secrets.
    """
    return {
        "env": settings.env,
        "failure_policy": settings.failure_policy,
        "session_store_enabled": settings.session_store_enabled,
        "event_log": {
            "enabled": settings.event_log_enabled,
            "path": settings.event_log_path or None,
            "fsync": settings.event_log_fsync,
        },
        "relational_sink": {
            "enabled": settings.relational_sink_enabled,
            "keepalive_seconds": settings.sink_keepalive_seconds,
        },
    }
