from unittest.mock import patch

import pytest

from trustgate.core.security_logger import SecurityLogger, sanitize, security_log


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, "unknown"),
        ("", "unknown"),
        ("  1.2.3.4  ", "1.2.3.4"),
        ("1.2.3.4\nSECURITY [FORGED] ip=6.6.6.6", "1.2.3.4SECURITY FORGED ip=6.6.6.6"),
        ("<script>\x00", "script"),
        (42, "42"),
    ],
)
def test_sanitize(value, expected):
    assert sanitize(value) == expected


def test_sanitize_truncates():
    assert sanitize("a" * 300) == "a" * 255
    assert sanitize("a" * 300, max_length=10) == "a" * 10


def test_security_logger_is_a_singleton():
    assert SecurityLogger() is security_log


def test_blacklist_hit_line():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.blacklist_hit("203.0.113.5", "/api/v1/security/2fa/verify", "Manual\nblock")

    mock_info.assert_called_once_with(
        "BLACKLIST_HIT] ip=203.0.113.5 path=/api/v1/security/2fa/verify reason=Manualblock"
    )


def test_ip_blacklisted_line_shows_duration():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.ip_blacklisted("203.0.113.5", "Automatic", "AUTOMATIC", 30)
        security_log.ip_blacklisted("203.0.113.6", "Manual", "MANUAL", None)

    first, second = (call.args[0] for call in mock_info.call_args_list)
    assert first == "IP_BLACKLISTED] ip=203.0.113.5 source=AUTOMATIC duration=30m reason=Automatic"
    assert "duration=permanent" in second


def test_escalation_and_anomaly_lines():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.escalation("203.0.113.5", "LOGIN_FAILED", 5, 5)
        security_log.location_anomaly("203.0.113.5", "u-1", "COUNTRY_CHANGE", "HIGH", 0.8)

    lines = [call.args[0] for call in mock_info.call_args_list]
    assert lines[0] == "ESCALATION] ip=203.0.113.5 activity=LOGIN_FAILED count=5 threshold=5"
    assert lines[1] == (
        "LOCATION_ANOMALY] ip=203.0.113.5 user_id=u-1 type=COUNTRY_CHANGE severity=HIGH risk=0.80"
    )


def test_mfa_failed_without_ip():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.mfa_failed(None, "u-1")
    mock_info.assert_called_once_with("MFA_FAILED] ip=unknown user_id=u-1")
