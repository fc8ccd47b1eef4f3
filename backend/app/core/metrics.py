"""Prometheus counters for security events."""

from prometheus_client import Counter

RATE_LIMIT_REJECTIONS = Counter(
    "authcore_rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["policy"],
)
ACCOUNT_LOCKOUTS = Counter(
    "authcore_account_lockouts_total",
    "Accounts locked after repeated failed logins",
)
TOKEN_ROTATIONS = Counter(
    "authcore_token_rotations_total",
    "Refresh token rotations by outcome",
    ["outcome"],
)
TOKEN_REUSE_DETECTED = Counter(
    "authcore_token_reuse_detected_total",
    "Refresh token reuse detections (token family revoked)",
)
CSRF_REJECTIONS = Counter(
    "authcore_csrf_rejections_total",
    "Mutating requests rejected by the CSRF guard",
)
SECURITY_CHECK_FAILURES = Counter(
    "authcore_security_check_failures_total",
    "Rate-limit or lockout checks that failed closed",
    ["check"],
)
AUDIT_WRITE_FAILURES = Counter(
    "authcore_audit_write_failures_total",
    "Audit events dropped after exhausting write attempts",
)
