"""
Prometheus metrics for mfa_service.

Counters only; labels are low-cardinality (method, channel, status).
User identifiers never appear in labels.
"""

from prometheus_client import Counter, Info

# ============================================================================
# Application Info
# ============================================================================

app_info = Info('mfa_service', 'MFA service application info')

# ============================================================================
# Verification Metrics
# ============================================================================

mfa_verifications_total = Counter(
    'mfa_verifications_total',
    'Total MFA verification attempts',
    ['method', 'status']  # method: totp, sms, email, backup_code; status: success, invalid_code, expired_code, rate_limited, error
)

mfa_codes_sent_total = Counter(
    'mfa_codes_sent_total',
    'Total one-time codes dispatched',
    ['channel', 'status']  # channel: sms, email; status: success, error
)

# ============================================================================
# State Change Metrics
# ============================================================================

mfa_state_changes_total = Counter(
    'mfa_state_changes_total',
    'Total MFA enrollment state changes',
    ['action']  # totp_enrollment_started, totp_enabled, totp_disabled, backup_codes_regenerated, all_mfa_disabled
)

# ============================================================================
# Audit Metrics
# ============================================================================

mfa_audit_events_failed_total = Counter(
    'mfa_audit_events_failed_total',
    'Audit events that could not be written on first attempt',
    ['reason']  # sink_unavailable, buffer_overflow
)
