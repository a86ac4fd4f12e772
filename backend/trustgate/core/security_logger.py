# backend/trustgate/core/security_logger.py
"""
Dedicated security logger for fail2ban integration.

Writes blacklist, escalation, anomaly and 2FA events to a rotating file in a
format fail2ban can parse. All user-controlled values are sanitized first.
"""

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from trustgate.core.config import settings

app_logger = logging.getLogger(__name__)


def sanitize(value: object | None, max_length: int = 255) -> str:
    """
    Sanitize a value to prevent log injection attacks.

    Removes newlines, brackets and control characters that could be used to
    forge entries or break the fail2ban pattern.
    """
    if value is None or value == "":
        return "unknown"

    value = str(value).strip()
    value = re.sub(r"[\n\r\[\]<>\x00-\x1f\x7f-\x9f]", "", value)
    return value[:max_length]


class SecurityLogger:
    """
    Process-wide security event logger.

    Line format:
        2026-01-05 10:15:30 SECURITY [EVENT_TYPE] ip=x.x.x.x field=value ...
    """

    _instance = None
    _initialized = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, log_path: str | Path | None = None):
        if SecurityLogger._initialized:
            return

        self.logger = logging.getLogger("security")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        path = Path(log_path or settings.SECURITY_LOG_PATH)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # 50MB max, keep 10 backups
            handler: logging.Handler = RotatingFileHandler(
                str(path),
                maxBytes=50 * 1024 * 1024,
                backupCount=10,
            )
        except OSError as e:
            app_logger.warning(f"Security log file {path} unavailable ({e}); using stderr.")
            handler = logging.StreamHandler()

        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s SECURITY [%(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

        self.logger.addHandler(handler)
        SecurityLogger._initialized = True

    def blacklist_hit(self, ip: str, path: str, reason: str | None) -> None:
        """A request from a blacklisted IP was rejected."""
        self.logger.info(
            f"BLACKLIST_HIT] ip={sanitize(ip)} path={sanitize(path, max_length=100)} "
            f"reason={sanitize(reason)}"
        )

    def ip_blacklisted(
        self, ip: str, reason: str, source: str, duration_minutes: int | None
    ) -> None:
        duration = "permanent" if duration_minutes is None else f"{duration_minutes}m"
        self.logger.info(
            f"IP_BLACKLISTED] ip={sanitize(ip)} source={sanitize(source)} "
            f"duration={duration} reason={sanitize(reason)}"
        )

    def ip_unblacklisted(self, ip: str) -> None:
        self.logger.info(f"IP_UNBLACKLISTED] ip={sanitize(ip)}")

    def escalation(self, ip: str, activity: str, count: int, threshold: int) -> None:
        """
        Log an automatic blacklist escalation.

        Args:
            ip: Offending IP address
            activity: Activity type that crossed the threshold
            count: Observed occurrences
            threshold: Configured threshold
        """
        self.logger.info(
            f"ESCALATION] ip={sanitize(ip)} activity={sanitize(activity)} "
            f"count={count} threshold={threshold}"
        )

    def location_anomaly(
        self, ip: str, user_id: str, anomaly_type: str, severity: str, risk_score: float
    ) -> None:
        self.logger.info(
            f"LOCATION_ANOMALY] ip={sanitize(ip)} user_id={sanitize(user_id)} "
            f"type={sanitize(anomaly_type)} severity={sanitize(severity)} "
            f"risk={risk_score:.2f}"
        )

    def mfa_failed(self, ip: str | None, user_id: str) -> None:
        """
        Log a failed 2FA attempt.

        Args:
            ip: Client IP address
            user_id: User ID (not email for privacy)
        """
        self.logger.info(f"MFA_FAILED] ip={sanitize(ip)} user_id={sanitize(user_id)}")

    def rate_limited(self, ip: str, endpoint: str) -> None:
        self.logger.info(
            f"RATE_LIMIT] ip={sanitize(ip)} endpoint={sanitize(endpoint, max_length=100)}"
        )

    def bad_token(self, ip: str, reason: str) -> None:
        """Expired tokens are normal behavior and are not logged here."""
        self.logger.info(f"BAD_TOKEN] ip={sanitize(ip)} reason={sanitize(reason)}")


# Singleton instance for easy import
security_log = SecurityLogger()
