# backend/trustgate/services/anomaly_detector.py
"""
Login anomaly detection.

Compares the location of a login against the user's recent successful-login
locations and flags independent risk signals. Detection is best-effort: any
failure degrades to "no anomalies" so it never blocks a login.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from trustgate.core.risk_policy import ActivityType, AnomalyType, RiskPolicy, Severity
from trustgate.core.security_logger import security_log
from trustgate.db.stores import AuditStore
from trustgate.services.audit_service import AuditService
from trustgate.services.geolocation import GeoLocation, GeoLocationResolver, calculate_distance
from trustgate.services.ip_blacklist import SUSPICIOUS_ACTIVITY, ActivityTracker

logger = logging.getLogger(__name__)

STATS_LOGIN_LIMIT = 500
UNKNOWN = "Unknown"

# Only logins carrying at least one of these count towards IP escalation
ESCALATING_SEVERITIES = {Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL}


@dataclass(frozen=True)
class LocationAnomaly:
    type: AnomalyType
    severity: Severity
    description: str
    current_location: GeoLocation
    previous_location: GeoLocation | None = None
    risk_score: float = 0.0


@dataclass(frozen=True)
class LocationStats:
    total_logins: int = 0
    unique_countries: int = 0
    unique_cities: int = 0
    most_frequent_country: str = UNKNOWN
    most_frequent_city: str = UNKNOWN
    last_login_location: GeoLocation | None = None
    anomalies_detected: int = 0


def _server_now() -> datetime:
    return datetime.now().astimezone()


class AnomalyDetector:
    def __init__(
        self,
        resolver: GeoLocationResolver,
        audit_store: AuditStore,
        audit: AuditService,
        policy: RiskPolicy | None = None,
        escalation: ActivityTracker | None = None,
        clock: Callable[[], datetime] = _server_now,
    ):
        self.resolver = resolver
        self.audit_store = audit_store
        self.audit = audit
        self.policy = policy or RiskPolicy()
        self.escalation = escalation
        self._clock = clock

    def _anomaly(
        self,
        anomaly_type: AnomalyType,
        description: str,
        current: GeoLocation,
        previous: GeoLocation | None = None,
    ) -> LocationAnomaly:
        rule = self.policy.rule_for(anomaly_type)
        return LocationAnomaly(
            type=anomaly_type,
            severity=rule.severity,
            description=description,
            current_location=current,
            previous_location=previous,
            risk_score=rule.risk_score,
        )

    async def _previous_location(self, user_id: str) -> GeoLocation | None:
        history = await self.audit_store.recent_login_ips(user_id, self.policy.history_size)
        if not history:
            return None
        resolved = await asyncio.gather(*(self.resolver.resolve(ip) for ip in history))
        # Most recent historical login that could be resolved
        return next((loc for loc in resolved if loc is not None), None)

    def _location_change(
        self, current: GeoLocation, previous: GeoLocation
    ) -> LocationAnomaly | None:
        if current.country_code != previous.country_code:
            return self._anomaly(
                AnomalyType.COUNTRY_CHANGE,
                f"Login from new country: {current.country} (previously {previous.country})",
                current,
                previous,
            )
        if current.region_code != previous.region_code:
            return self._anomaly(
                AnomalyType.REGION_CHANGE,
                f"Login from new region: {current.region} (previously {previous.region})",
                current,
                previous,
            )
        if current.city != previous.city:
            distance = calculate_distance(
                previous.latitude, previous.longitude, current.latitude, current.longitude
            )
            if distance > self.policy.city_change_min_km:
                return self._anomaly(
                    AnomalyType.CITY_CHANGE,
                    f"Login from {current.city}, {distance:.0f} km from {previous.city}",
                    current,
                    previous,
                )
        return None

    async def detect_anomalies(self, user_id: str, current_ip: str) -> list[LocationAnomaly]:
        try:
            current = await self.resolver.resolve(current_ip)
            if current is None:
                return []

            previous = await self._previous_location(str(user_id))
            if previous is None:
                # First observed login: nothing to compare against
                return []

            anomalies: list[LocationAnomaly] = []
            change = self._location_change(current, previous)
            if change is not None:
                anomalies.append(change)

            if current.proxy or current.vpn:
                anomalies.append(
                    self._anomaly(
                        AnomalyType.SUSPICIOUS_PROXY,
                        "Login through a proxy or VPN",
                        current,
                    )
                )

            if current.country_code in self.policy.high_risk_countries:
                anomalies.append(
                    self._anomaly(
                        AnomalyType.HIGH_RISK_COUNTRY,
                        f"Login from high-risk country: {current.country}",
                        current,
                    )
                )

            hour = self._clock().hour
            if self.policy.is_unusual_hour(hour):
                anomalies.append(
                    self._anomaly(
                        AnomalyType.UNUSUAL_TIME,
                        f"Login at unusual hour: {hour:02d}:00",
                        current,
                    )
                )
            return anomalies
        except Exception as e:
            logger.error(f"Anomaly detection failed for user {user_id}: {e}", exc_info=True)
            return []

    async def record_anomalies(
        self, user_id: str, ip: str, anomalies: list[LocationAnomaly]
    ) -> bool:
        """
        Write each anomaly as a security event and feed IP escalation.

        Returns True if the IP was escalated to the blacklist.
        """
        for anomaly in anomalies:
            self.audit.log_security_event(
                action=SUSPICIOUS_ACTIVITY,
                severity=anomaly.severity,
                user_id=str(user_id),
                ip_address=ip,
                details={
                    "anomaly_type": anomaly.type.value,
                    "description": anomaly.description,
                    "location": anomaly.current_location.to_dict(),
                    "previous_location": (
                        anomaly.previous_location.to_dict() if anomaly.previous_location else None
                    ),
                    "risk_score": anomaly.risk_score,
                },
            )
            security_log.location_anomaly(
                ip, str(user_id), anomaly.type.value, anomaly.severity.value, anomaly.risk_score
            )

        if self.escalation is None or not any(
            a.severity in ESCALATING_SEVERITIES for a in anomalies
        ):
            return False

        return await self.escalation.record(
            ip,
            ActivityType.LOCATION_ANOMALY.value,
            threshold=self.policy.anomaly_escalation_threshold,
            window=self.policy.escalation_window,
            details={"user_id": str(user_id)},
        )

    async def check_login(self, user_id: str, ip: str) -> list[LocationAnomaly]:
        """Login hook: detect and record. Call before the LOGIN audit entry is written."""
        anomalies = await self.detect_anomalies(user_id, ip)
        if anomalies:
            await self.record_anomalies(user_id, ip, anomalies)
        return anomalies

    async def get_user_location_stats(self, user_id: str) -> LocationStats:
        user_id = str(user_id)
        try:
            anomalies_detected = await self.audit_store.count_security(
                user_id=user_id, action=SUSPICIOUS_ACTIVITY
            )
            login_ips = await self.audit_store.login_ips(user_id, limit=STATS_LOGIN_LIMIT)
            if not login_ips:
                return LocationStats(anomalies_detected=anomalies_detected)

            unique_ips = list(dict.fromkeys(login_ips))
            resolved = await asyncio.gather(*(self.resolver.resolve(ip) for ip in unique_ips))
            by_ip = dict(zip(unique_ips, resolved, strict=True))
            locations = [by_ip[ip] for ip in login_ips if by_ip[ip] is not None]

            countries = Counter(loc.country_code for loc in locations)
            cities = Counter(loc.city for loc in locations)
            return LocationStats(
                total_logins=len(login_ips),
                unique_countries=len(countries),
                unique_cities=len(cities),
                most_frequent_country=countries.most_common(1)[0][0] if countries else UNKNOWN,
                most_frequent_city=cities.most_common(1)[0][0] if cities else UNKNOWN,
                last_login_location=locations[0] if locations else None,
                anomalies_detected=anomalies_detected,
            )
        except Exception as e:
            logger.error(f"Failed to build location stats for user {user_id}: {e}")
            return LocationStats()
