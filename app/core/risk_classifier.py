"""
Risk classification for hazard observations.

Pure functions over ObservationRecords. Nothing here touches the store,
the network or the clock, and nothing computed here is persisted: every
derived field is recomputed from the record's raw attributes.
"""
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

from app.core.observations import (
    ObservationRecord,
    SeismicRecord,
    SpaceWeatherRecord,
    WaterLevelRecord,
)


class SeverityTier(str, Enum):
    """Earthquake severity by magnitude."""
    GREAT = "GREAT"
    MAJOR = "MAJOR"
    STRONG = "STRONG"
    MODERATE = "MODERATE"
    LIGHT = "LIGHT"
    MINOR = "MINOR"
    MICRO = "MICRO"
    UNKNOWN = "UNKNOWN"


class FloodSeverity(IntEnum):
    """NWS flood categories; comparison follows severity."""
    NORMAL = 0
    ACTION = 1
    MINOR = 2
    MODERATE = 3
    MAJOR = 4


# Lower bound (inclusive) -> tier, most severe first
SEVERITY_THRESHOLDS = (
    (8.0, SeverityTier.GREAT),
    (7.0, SeverityTier.MAJOR),
    (6.0, SeverityTier.STRONG),
    (5.0, SeverityTier.MODERATE),
    (4.0, SeverityTier.LIGHT),
    (3.0, SeverityTier.MINOR),
)

DANGEROUS_MAGNITUDE = 5.0
CATASTROPHIC_MAGNITUDE = 7.0
SIGNIFICANT_MAGNITUDE = 6.0
SHALLOW_DEPTH_KM = 70.0
VERY_SHALLOW_DEPTH_KM = 30.0
TSUNAMI_ALERT_SCORE = 50

# Kp lower bound -> NOAA G-scale
GEOMAGNETIC_STORM_SCALE = (
    (9.0, "G5"),
    (8.0, "G4"),
    (7.0, "G3"),
    (6.0, "G2"),
    (5.0, "G1"),
)


def severity_tier(magnitude: Optional[float]) -> SeverityTier:
    if magnitude is None:
        return SeverityTier.UNKNOWN
    for threshold, tier in SEVERITY_THRESHOLDS:
        if magnitude >= threshold:
            return tier
    return SeverityTier.MICRO


def is_dangerous(magnitude: Optional[float]) -> bool:
    return magnitude is not None and magnitude >= DANGEROUS_MAGNITUDE


def is_catastrophic(magnitude: Optional[float]) -> bool:
    return magnitude is not None and magnitude >= CATASTROPHIC_MAGNITUDE


def is_shallow(depth_km: Optional[float]) -> bool:
    return depth_km is not None and depth_km < SHALLOW_DEPTH_KM


def tsunami_risk_score(
    magnitude: Optional[float],
    depth_km: Optional[float],
    tsunami_warning: bool = False,
) -> int:
    """
    Heuristic tsunami risk score in [0, 100].

    Magnitude contributes 50 (>= 7.5) or 30 (>= 6.5), depth contributes
    25 (< 30 km) or 15 (< 70 km), and an upstream warning flag adds 25.
    An event without both magnitude and depth scores 0.
    """
    if magnitude is None or depth_km is None:
        return 0

    score = 0
    if magnitude >= 7.5:
        score += 50
    elif magnitude >= 6.5:
        score += 30

    if depth_km < VERY_SHALLOW_DEPTH_KM:
        score += 25
    elif depth_km < SHALLOW_DEPTH_KM:
        score += 15

    if tsunami_warning:
        score += 25

    return max(0, min(score, 100))


def flood_severity(record: WaterLevelRecord) -> FloodSeverity:
    """
    Compare the current level against the station's flood stages.

    Stages are checked from most severe down; a missing stage is skipped.
    """
    level = record.water_level_feet
    if level is None:
        return FloodSeverity.NORMAL

    stages = (
        (record.major_flood_stage_feet, FloodSeverity.MAJOR),
        (record.moderate_flood_stage_feet, FloodSeverity.MODERATE),
        (record.minor_flood_stage_feet, FloodSeverity.MINOR),
        (record.action_stage_feet, FloodSeverity.ACTION),
    )
    for threshold, severity in stages:
        if threshold is not None and level >= threshold:
            return severity
    return FloodSeverity.NORMAL


def is_flooding(record: WaterLevelRecord) -> bool:
    return flood_severity(record) != FloodSeverity.NORMAL


def geomagnetic_storm_scale(kp: Optional[float]) -> str:
    if kp is None:
        return "G0"
    for threshold, scale in GEOMAGNETIC_STORM_SCALE:
        if kp >= threshold:
            return scale
    return "G0"


@dataclass(frozen=True)
class Classification:
    """Derived fields for one record. Only the fields of its domain are set."""

    severity: Optional[SeverityTier] = None
    dangerous: bool = False
    catastrophic: bool = False
    shallow: bool = False
    tsunami_risk_score: int = 0
    tsunami_warning: bool = False
    flood_severity: Optional[FloodSeverity] = None
    storm_scale: Optional[str] = None

    @property
    def flooding(self) -> bool:
        return self.flood_severity is not None and self.flood_severity != FloodSeverity.NORMAL

    @property
    def tsunami_risk(self) -> bool:
        return self.tsunami_warning or self.tsunami_risk_score >= TSUNAMI_ALERT_SCORE

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.severity is not None:
            data.update({
                "severity": self.severity.value,
                "is_dangerous": self.dangerous,
                "is_catastrophic": self.catastrophic,
                "is_shallow": self.shallow,
                "tsunami_risk_score": self.tsunami_risk_score,
            })
        if self.flood_severity is not None:
            data["flood_severity"] = self.flood_severity.name
            data["is_flooding"] = self.flooding
        if self.storm_scale is not None:
            data["storm_scale"] = self.storm_scale
        return data


def classify(record: ObservationRecord) -> Classification:
    """Derive every classification that applies to the record's domain."""
    if isinstance(record, SeismicRecord):
        return Classification(
            severity=severity_tier(record.magnitude),
            dangerous=is_dangerous(record.magnitude),
            catastrophic=is_catastrophic(record.magnitude),
            shallow=is_shallow(record.depth_km),
            tsunami_risk_score=tsunami_risk_score(
                record.magnitude, record.depth_km, record.tsunami_warning
            ),
            tsunami_warning=record.tsunami_warning,
        )
    if isinstance(record, WaterLevelRecord):
        return Classification(flood_severity=flood_severity(record))
    if isinstance(record, SpaceWeatherRecord) and record.metric_type == "kp_index":
        return Classification(storm_scale=geomagnetic_storm_scale(record.index_value))
    return Classification()
