# backend/trustgate/core/risk_policy.py
"""
Tunable risk policy table.

Maps each anomaly type to a severity and risk score, and each suspicious
activity to a blacklist duration and escalation threshold. Operators retune
these through settings instead of code changes.
"""

import enum
from dataclasses import dataclass, field
from datetime import timedelta

from trustgate.core.config import Settings


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AnomalyType(str, enum.Enum):
    COUNTRY_CHANGE = "COUNTRY_CHANGE"
    REGION_CHANGE = "REGION_CHANGE"
    CITY_CHANGE = "CITY_CHANGE"
    SUSPICIOUS_PROXY = "SUSPICIOUS_PROXY"
    UNUSUAL_TIME = "UNUSUAL_TIME"
    HIGH_RISK_COUNTRY = "HIGH_RISK_COUNTRY"


class ActivityType(str, enum.Enum):
    LOGIN_FAILED = "LOGIN_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    FILE_UPLOAD_VIOLATION = "FILE_UPLOAD_VIOLATION"
    LOCATION_ANOMALY = "LOCATION_ANOMALY"


@dataclass(frozen=True)
class AnomalyRule:
    severity: Severity
    risk_score: float


DEFAULT_ANOMALY_RULES: dict[AnomalyType, AnomalyRule] = {
    AnomalyType.COUNTRY_CHANGE: AnomalyRule(Severity.HIGH, 0.8),
    AnomalyType.REGION_CHANGE: AnomalyRule(Severity.MEDIUM, 0.6),
    AnomalyType.CITY_CHANGE: AnomalyRule(Severity.LOW, 0.4),
    AnomalyType.SUSPICIOUS_PROXY: AnomalyRule(Severity.MEDIUM, 0.7),
    AnomalyType.HIGH_RISK_COUNTRY: AnomalyRule(Severity.CRITICAL, 0.9),
    AnomalyType.UNUSUAL_TIME: AnomalyRule(Severity.LOW, 0.3),
}

DEFAULT_DURATIONS_MINUTES: dict[str, int] = {
    ActivityType.LOGIN_FAILED.value: 30,
    ActivityType.RATE_LIMIT_EXCEEDED.value: 60,
    ActivityType.UNAUTHORIZED_ACCESS.value: 120,
    ActivityType.FILE_UPLOAD_VIOLATION.value: 240,
}

DEFAULT_THRESHOLDS: dict[str, int] = {
    ActivityType.LOGIN_FAILED.value: 5,
    ActivityType.RATE_LIMIT_EXCEEDED.value: 3,
    ActivityType.FILE_UPLOAD_VIOLATION.value: 3,
}


@dataclass
class RiskPolicy:
    anomaly_rules: dict[AnomalyType, AnomalyRule] = field(
        default_factory=lambda: dict(DEFAULT_ANOMALY_RULES)
    )
    blacklist_durations: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_DURATIONS_MINUTES)
    )
    default_duration_minutes: int = 60
    activity_thresholds: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    activity_window: timedelta = timedelta(minutes=15)
    high_risk_countries: frozenset[str] = frozenset({"KP", "IR", "SY", "CU", "RU"})
    history_size: int = 5
    city_change_min_km: float = 100.0
    anomaly_escalation_threshold: int = 5
    escalation_window: timedelta = timedelta(minutes=60)
    # Local hours considered normal are [quiet_hours_end, quiet_hours_start]
    quiet_hours_end: int = 6
    quiet_hours_start: int = 23

    @classmethod
    def from_settings(cls, settings: Settings) -> "RiskPolicy":
        durations = dict(DEFAULT_DURATIONS_MINUTES)
        durations.update(settings.BLACKLIST_DURATIONS_MINUTES)
        thresholds = dict(DEFAULT_THRESHOLDS)
        thresholds.update(settings.BLACKLIST_THRESHOLDS)
        rules = dict(DEFAULT_ANOMALY_RULES)
        for name, override in settings.ANOMALY_RULES.items():
            # Unknown anomaly types or severities raise ValueError
            anomaly_type = AnomalyType(name)
            current = rules[anomaly_type]
            rules[anomaly_type] = AnomalyRule(
                severity=Severity(override.get("severity", current.severity)),
                risk_score=override.get("risk_score", current.risk_score),
            )
        return cls(
            anomaly_rules=rules,
            blacklist_durations=durations,
            default_duration_minutes=settings.BLACKLIST_DEFAULT_DURATION_MINUTES,
            activity_thresholds=thresholds,
            activity_window=timedelta(minutes=settings.ACTIVITY_WINDOW_MINUTES),
            high_risk_countries=frozenset(settings.HIGH_RISK_COUNTRIES),
            history_size=settings.ANOMALY_HISTORY_SIZE,
            city_change_min_km=settings.CITY_CHANGE_MIN_KM,
            anomaly_escalation_threshold=settings.ANOMALY_ESCALATION_THRESHOLD,
            escalation_window=timedelta(minutes=settings.ANOMALY_ESCALATION_WINDOW_MINUTES),
            quiet_hours_end=settings.ANOMALY_QUIET_HOURS_END,
            quiet_hours_start=settings.ANOMALY_QUIET_HOURS_START,
        )

    def rule_for(self, anomaly_type: AnomalyType) -> AnomalyRule:
        return self.anomaly_rules[anomaly_type]

    def duration_for(self, activity: str) -> int:
        """Blacklist duration in minutes for an activity, falling back to the default."""
        return self.blacklist_durations.get(str(activity).upper(), self.default_duration_minutes)

    def threshold_for(self, activity: str) -> int | None:
        return self.activity_thresholds.get(str(activity).upper())

    def is_unusual_hour(self, hour: int) -> bool:
        return hour < self.quiet_hours_end or hour > self.quiet_hours_start
