"""Dataclasses for indicators, threat actors, correlations, pivots, and reports."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class IndicatorType(str, Enum):
    IP_ADDRESS = "IpAddress"
    DOMAIN = "Domain"
    URL = "Url"
    FILE_HASH = "FileHash"
    EMAIL = "Email"
    MUTEX = "Mutex"
    REGISTRY = "Registry"
    CERTIFICATE = "Certificate"


@dataclass
class Indicator:
    """A single Indicator of Compromise as reported by one source."""

    value: str
    kind: IndicatorType
    source: str  # producing feed, e.g. "AlienVault_OTX"
    confidence: int = 75  # 0-100
    created_at: datetime = field(default_factory=_utcnow)
    last_seen_at: datetime = field(default_factory=_utcnow)
    tags: list[str] = field(default_factory=list)
    actor_name: str | None = None
    malware_family: str | None = None
    description: str | None = None
    id: str = field(default_factory=_new_id)

    def __post_init__(self):
        self.confidence = max(0, min(100, int(self.confidence)))

    @property
    def identity(self) -> tuple[str, IndicatorType]:
        """Dedup key: the same entity regardless of which source saw it."""
        return (self.value.lower(), self.kind)

    def __str__(self) -> str:
        return (
            f"{self.kind.value}: {self.value} "
            f"(Source: {self.source}, Confidence: {self.confidence}%)"
        )


@dataclass
class ThreatActor:
    """A threat actor profile; same-named profiles from several feeds get merged."""

    name: str
    aliases: list[str] = field(default_factory=list)
    country: str | None = None
    motivations: list[str] = field(default_factory=list)
    targets: list[str] = field(default_factory=list)
    ttps: list[str] = field(default_factory=list)
    indicators: list[Indicator] = field(default_factory=list)
    first_seen: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)

    @property
    def key(self) -> str:
        return self.name.lower()

    def __str__(self) -> str:
        aka = f" (aka: {', '.join(self.aliases)})" if self.aliases else ""
        return (
            f"{self.name}{aka} - {self.country or 'Unknown'} - "
            f"{len(self.indicators)} indicators"
        )


class CorrelationType(str, Enum):
    CROSS_SOURCE_VALIDATION = "CROSS_SOURCE_VALIDATION"
    TEMPORAL_CLUSTER = "TEMPORAL_CLUSTER"
    THREAT_ACTOR_ATTRIBUTION = "THREAT_ACTOR_ATTRIBUTION"
    MALWARE_FAMILY_CLUSTER = "MALWARE_FAMILY_CLUSTER"
    INFRASTRUCTURE_CLUSTER = "INFRASTRUCTURE_CLUSTER"


# Evidence carried by each correlation type. One dataclass per type so the
# fields stay checkable instead of living in a free-form dict.


@dataclass
class CrossSourceDetails:
    correlation_type: ClassVar[CorrelationType] = CorrelationType.CROSS_SOURCE_VALIDATION

    sources: list[str]
    validation_count: int

    def as_dict(self) -> dict:
        return {"sources": list(self.sources), "validation_count": self.validation_count}


@dataclass
class TemporalDetails:
    correlation_type: ClassVar[CorrelationType] = CorrelationType.TEMPORAL_CLUSTER

    time_window: str  # "YYYY-MM-DD HH:00"
    indicator_count: int
    source_diversity: int

    def as_dict(self) -> dict:
        return {
            "time_window": self.time_window,
            "indicator_count": self.indicator_count,
            "source_diversity": self.source_diversity,
        }


@dataclass
class ActorAttributionDetails:
    correlation_type: ClassVar[CorrelationType] = CorrelationType.THREAT_ACTOR_ATTRIBUTION

    actor_name: str
    indicator_types: dict[str, int]
    source_attribution: list[str]

    def as_dict(self) -> dict:
        return {
            "actor_name": self.actor_name,
            "indicator_types": dict(self.indicator_types),
            "source_attribution": list(self.source_attribution),
        }


@dataclass
class MalwareFamilyDetails:
    correlation_type: ClassVar[CorrelationType] = CorrelationType.MALWARE_FAMILY_CLUSTER

    malware_family: str
    sample_count: int
    hash_count: int
    source_diversity: int

    def as_dict(self) -> dict:
        return {
            "malware_family": self.malware_family,
            "sample_count": self.sample_count,
            "hash_types": self.hash_count,
            "source_diversity": self.source_diversity,
        }


@dataclass
class InfrastructureDetails:
    correlation_type: ClassVar[CorrelationType] = CorrelationType.INFRASTRUCTURE_CLUSTER

    root_domain: str
    subdomain_count: int
    threat_actors: list[str]

    def as_dict(self) -> dict:
        return {
            "root_domain": self.root_domain,
            "subdomain_count": self.subdomain_count,
            "threat_actors": list(self.threat_actors),
        }


CorrelationDetails = Union[
    CrossSourceDetails,
    TemporalDetails,
    ActorAttributionDetails,
    MalwareFamilyDetails,
    InfrastructureDetails,
]


@dataclass
class CorrelationResult:
    related_indicators: list[Indicator]
    correlation_type: CorrelationType
    confidence_score: float  # 0.0-1.0
    description: str
    details: CorrelationDetails
    discovered_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_id)

    def __str__(self) -> str:
        return (
            f"{self.correlation_type.value}: {len(self.related_indicators)} indicators "
            f"(Confidence: {self.confidence_score:.1%})"
        )


class PivotType(str, Enum):
    C2_IP_OVERLAP = "C2_IP_OVERLAP"
    C2_DOMAIN_OVERLAP = "C2_DOMAIN_OVERLAP"
    INFRASTRUCTURE_OVERLAP = "INFRASTRUCTURE_OVERLAP"


@dataclass
class InfrastructurePivot:
    """An IP or domain shared across actors or confirmed by several sources."""

    threat_actors: list[str]
    shared_infrastructure: Indicator
    pivot_type: PivotType
    confidence_score: float
    evidence: list[str] = field(default_factory=list)
    related_campaigns: list[str] = field(default_factory=list)  # reserved
    discovered_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_id)

    def __str__(self) -> str:
        return (
            f"{self.pivot_type.value}: {self.shared_infrastructure.value} shared by "
            f"{len(self.threat_actors)} actors (Confidence: {self.confidence_score:.1%})"
        )


@dataclass
class TopActor:
    name: str
    indicator_count: int
    ttp_count: int


@dataclass
class AnalysisReport:
    """Everything one batch run produced, handed to the report writers."""

    completed_at: datetime | None = None
    processing_time_ms: int = 0
    total_indicators: int = 0
    total_threat_actors: int = 0
    correlations: list[CorrelationResult] = field(default_factory=list)
    infrastructure_pivots: list[InfrastructurePivot] = field(default_factory=list)
    indicators_by_type: dict[str, int] = field(default_factory=dict)
    indicators_by_source: dict[str, int] = field(default_factory=dict)
    indicators_by_confidence: dict[str, int] = field(default_factory=dict)
    top_threat_actors: list[TopActor] = field(default_factory=list)
    top_malware_families: dict[str, int] = field(default_factory=dict)
    high_confidence_correlations: list[CorrelationResult] = field(default_factory=list)
    error_message: str | None = None
    indicators: list[Indicator] = field(default_factory=list)
    actors: list[ThreatActor] = field(default_factory=list)
