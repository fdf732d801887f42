"""
security/threats.py -- Login risk scoring and behavioural anomaly detection.

Both checks follow the same shape: ThreatDetector pulls counters out of the
credential store (and bumps them), packs them into a signals dataclass, and
hands that to a pure scoring function. Weights and thresholds live in the
scoring functions only.

Login risk (score_login), additive and capped at 100:
    attempts from the IP in 15 min above 5   +10 per attempt, max +50
    IP in the suspicious_ips set             +70
    user agent never seen for this account   +20
    new location class for this account      +30   (only once history exists)
    hour not among the account's usual ones  +15   (only once history exists)
    blocked when the score reaches 80.

Anomalies (score_anomaly):
    hourly count above 3x the historical hourly average   +40
    same action again within 1 s                          +30
    more than 100 distinct resources touched today        +25
    anomalous when confidence (score / 100) reaches 0.5.

Failures fail closed: a login that cannot be analysed is blocked with score
100, an action that cannot be analysed is reported anomalous.

Store keys:
    login_attempts:{ip}                         counter, 15 min TTL
    suspicious_ips                              set
    login:{email}:user_agents|locations|typical_hours   history sets
    user_action:{user_id}:{action}:{hour}       counter per hour bucket, 7 day TTL
    user_last_action:{user_id}:{action}         epoch seconds
    user_resources:{user_id}:{day}              set, 24 h TTL
"""

from __future__ import annotations

import ipaddress
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

from core.errors import MalformedStoredData
from security.events import SecurityEventLog
from security.models import AnomalyAssessment, AnomalySignals, LoginAssessment, LoginSignals
from store.kv import CredentialStore

logger = logging.getLogger("trustgate.threats")

SUSPICIOUS_IPS_KEY = "suspicious_ips"

ATTEMPT_WINDOW_SECONDS = 900
ATTEMPT_THRESHOLD = 5
ATTEMPT_WEIGHT = 10
ATTEMPT_CAP = 50
FLAGGED_IP_WEIGHT = 70
UNUSUAL_AGENT_WEIGHT = 20
NEW_LOCATION_WEIGHT = 30
ODD_HOUR_WEIGHT = 15
BLOCK_THRESHOLD = 80
THREAT_THRESHOLD = 50

ACTION_BUCKET_SECONDS = 3600
ACTION_HISTORY_SECONDS = 7 * 86400
FREQUENCY_MULTIPLIER = 3
FREQUENCY_WEIGHT = 40
RAPID_SECONDS = 1.0
RAPID_WEIGHT = 30
RESOURCE_LIMIT = 100
RESOURCE_WEIGHT = 25
RESOURCE_WINDOW_SECONDS = 86400
ANOMALY_THRESHOLD = 0.5

_VERSION_RE = re.compile(r"\d+\.\d+\.\d+")


def normalize_user_agent(user_agent: str) -> str:
    """Lower-case and mask dotted versions so browser updates are not "new"."""
    return _VERSION_RE.sub("X.X.X", (user_agent or "").lower())


def location_class(ip: str) -> str:
    """Coarse location of ip: "local" for private/loopback, else "external"."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return "external"
    return "local" if address.is_private or address.is_loopback else "external"


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def score_login(signals: LoginSignals) -> LoginAssessment:
    score = 0
    reasons: list[str] = []

    if signals.attempts > ATTEMPT_THRESHOLD:
        score += min(ATTEMPT_CAP, ATTEMPT_WEIGHT * (signals.attempts - ATTEMPT_THRESHOLD))
        reasons.append("Excessive login attempts from IP")
    if signals.ip_flagged:
        score += FLAGGED_IP_WEIGHT
        reasons.append("IP address flagged as suspicious")
    if not signals.user_agent_known:
        score += UNUSUAL_AGENT_WEIGHT
        reasons.append("Unusual user agent")
    if signals.location_known is False:
        score += NEW_LOCATION_WEIGHT
        reasons.append("Login from new location")
    if signals.hour_typical is False:
        score += ODD_HOUR_WEIGHT
        reasons.append("Login outside typical hours")

    score = min(100, score)
    return LoginAssessment(risk_score=score, blocked=score >= BLOCK_THRESHOLD, reasons=reasons)


def score_anomaly(signals: AnomalySignals) -> AnomalyAssessment:
    score = 0
    reasons: list[str] = []

    if signals.action_count > signals.historical_average * FREQUENCY_MULTIPLIER:
        score += FREQUENCY_WEIGHT
        reasons.append("Unusual frequency of action")
    if signals.seconds_since_last is not None and signals.seconds_since_last < RAPID_SECONDS:
        score += RAPID_WEIGHT
        reasons.append("Rapid successive actions")
    if signals.distinct_resources > RESOURCE_LIMIT:
        score += RESOURCE_WEIGHT
        reasons.append("Excessive resource access")

    confidence = min(score / 100, 1.0)
    return AnomalyAssessment(is_anomalous=confidence >= ANOMALY_THRESHOLD, confidence=confidence, reasons=reasons)


def _login_severity(score: int) -> str:
    if score >= BLOCK_THRESHOLD:
        return "critical"
    if score >= THREAT_THRESHOLD:
        return "high"
    return "low"


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class ThreatDetector:
    def __init__(self, store: CredentialStore, events: SecurityEventLog, clock=time.time) -> None:
        self._store = store
        self._events = events
        self._clock = clock

    def _utc_hour(self, now: float) -> int:
        return datetime.fromtimestamp(now, timezone.utc).hour

    # ------------------------------------------------------------------
    # Login risk
    # ------------------------------------------------------------------

    def _login_signals(self, email: str, ip: str, user_agent: str) -> LoginSignals:
        attempts_key = f"login_attempts:{ip}"
        attempts = self._store.incr(attempts_key)
        if attempts == 1:
            self._store.expire(attempts_key, ATTEMPT_WINDOW_SECONDS)

        locations = self._store.smembers(f"login:{email}:locations")
        hours = self._store.smembers(f"login:{email}:typical_hours")
        return LoginSignals(
            attempts=attempts,
            ip_flagged=self._store.sismember(SUSPICIOUS_IPS_KEY, ip),
            user_agent_known=self._store.sismember(f"login:{email}:user_agents", normalize_user_agent(user_agent)),
            location_known=(location_class(ip) in locations) if locations else None,
            hour_typical=(str(self._utc_hour(self._clock())) in hours) if hours else None,
        )

    def analyze_login_attempt(self, email: str, ip: str, user_agent: str) -> LoginAssessment:
        """Score one login attempt. Never raises; blocks on internal failure."""
        details: dict[str, Any] = {"email": email}
        try:
            assessment = score_login(self._login_signals(email, ip, user_agent))
        except Exception as exc:
            logger.exception("Threat analysis failed for %s from %s", email, ip)
            assessment = LoginAssessment(risk_score=100, blocked=True, reasons=["Analysis error"])
            details["error"] = type(exc).__name__

        if assessment.blocked:
            logger.warning("Blocking login for %s from %s (score %d)", email, ip, assessment.risk_score)
        details.update(risk_score=assessment.risk_score, reasons=assessment.reasons, blocked=assessment.blocked)
        self._events.emit(
            "threat_detected" if assessment.risk_score >= THREAT_THRESHOLD else "login_attempt",
            _login_severity(assessment.risk_score),
            details,
            ip_address=ip,
            user_agent=user_agent,
            resolved=not assessment.blocked,
        )
        return assessment

    def record_successful_login(self, email: str, ip: str, user_agent: str) -> None:
        """Teach the account's history sets about a login the user completed."""
        self._store.sadd(f"login:{email}:user_agents", normalize_user_agent(user_agent))
        self._store.sadd(f"login:{email}:locations", location_class(ip))
        self._store.sadd(f"login:{email}:typical_hours", str(self._utc_hour(self._clock())))

    def flag_ip(self, ip: str) -> bool:
        added = self._store.sadd(SUSPICIOUS_IPS_KEY, ip) == 1
        if added:
            logger.info("IP %s flagged as suspicious", ip)
        return added

    def unflag_ip(self, ip: str) -> bool:
        removed = self._store.srem(SUSPICIOUS_IPS_KEY, ip) == 1
        if removed:
            logger.info("IP %s removed from suspicious list", ip)
        return removed

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    def _historical_average(self, prefix: str, current_key: str) -> int:
        """Floor of the mean count over earlier hour buckets, at least 1."""
        # An action named "read:x" shares the "read:" prefix; its buckets are not ours.
        earlier = [
            key
            for key in self._store.keys(prefix)
            if key != current_key and key[len(prefix) :].isdigit()
        ]
        if not earlier:
            return 1
        total = 0
        for key, value in zip(earlier, self._store.mget(earlier)):
            try:
                total += int(value or 0)
            except ValueError:
                raise MalformedStoredData(key, "counter is not an integer") from None
        return max(1, total // len(earlier))

    def _anomaly_signals(self, user_id: str, action: str, context: dict[str, Any]) -> AnomalySignals:
        now = self._clock()

        prefix = f"user_action:{user_id}:{action}:"
        bucket_key = f"{prefix}{int(now // ACTION_BUCKET_SECONDS)}"
        count = self._store.incr(bucket_key)
        self._store.expire(bucket_key, ACTION_HISTORY_SECONDS)
        average = self._historical_average(prefix, bucket_key)

        last_key = f"user_last_action:{user_id}:{action}"
        last = self._store.get(last_key)
        self._store.set(last_key, repr(now))
        since_last = None
        if last is not None:
            try:
                since_last = now - float(last)
            except ValueError:
                raise MalformedStoredData(last_key, "timestamp is not a number") from None

        distinct = 0
        resource = context.get("resource")
        if resource:
            resources_key = f"user_resources:{user_id}:{int(now // RESOURCE_WINDOW_SECONDS)}"
            self._store.sadd(resources_key, str(resource))
            self._store.expire(resources_key, RESOURCE_WINDOW_SECONDS)
            distinct = self._store.scard(resources_key)

        return AnomalySignals(
            action_count=count,
            historical_average=average,
            seconds_since_last=since_last,
            distinct_resources=distinct,
        )

    def detect_anomalies(self, user_id: str, action: str, context: dict[str, Any] | None = None) -> AnomalyAssessment:
        """Score one user action. Never raises; reports anomalous on internal failure."""
        context = context or {}
        details: dict[str, Any] = {"action": action}
        try:
            signals = self._anomaly_signals(user_id, action, context)
            assessment = score_anomaly(signals)
            details["action_count"] = signals.action_count
        except Exception as exc:
            logger.exception("Anomaly detection failed for user %s action %s", user_id, action)
            assessment = AnomalyAssessment(is_anomalous=True, confidence=1.0, reasons=["Detection error"])
            details["error"] = type(exc).__name__

        if assessment.is_anomalous:
            event_type = "anomaly_detected"
            severity = "high" if assessment.confidence >= 0.7 else "medium"
        else:
            event_type, severity = "activity_check", "low"
        details.update(confidence=assessment.confidence, reasons=assessment.reasons)
        self._events.emit(
            event_type,
            severity,
            details,
            user_id=user_id,
            ip_address=str(context.get("ipAddress") or "internal"),
            user_agent=str(context.get("userAgent") or "system"),
            resolved=not assessment.is_anomalous,
        )
        return assessment
