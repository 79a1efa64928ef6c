"""Correlation and infrastructure-pivot analysis over one collected snapshot.

Five independent passes group the indicator set by a different key, gate on
group size, cap the number of groups (first groups encountered, not the
largest), and score each group with its own bounded formula. The combined
result is sorted by confidence, highest first.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable
from datetime import datetime, timezone

from .config import CorrelationSettings
from .models import (
    ActorAttributionDetails,
    CorrelationResult,
    CorrelationType,
    CrossSourceDetails,
    Indicator,
    IndicatorType,
    InfrastructureDetails,
    InfrastructurePivot,
    MalwareFamilyDetails,
    PivotType,
    TemporalDetails,
)

logger = logging.getLogger(__name__)

CROSS_SOURCE_CAP = 50
TEMPORAL_CAP = 20
ACTOR_CAP = 25
MALWARE_FAMILY_CAP = 30
INFRASTRUCTURE_CAP = 15

TEMPORAL_MIN_INDICATORS = 10  # exclusive
ACTOR_MIN_INDICATORS = 5  # exclusive
MALWARE_FAMILY_MIN_SAMPLES = 3  # exclusive
INFRASTRUCTURE_MIN_SUBDOMAINS = 2  # exclusive


# Confidence formulas


def cross_source_confidence(source_count: int) -> float:
    return min(0.5 + source_count * 0.15, 0.95)


def temporal_confidence(indicator_count: int, source_count: int) -> float:
    base = min(indicator_count * 0.02, 0.6)
    bonus = min(source_count * 0.1, 0.3)
    return min(base + bonus, 0.9)


def actor_confidence(indicator_count: int, source_count: int) -> float:
    base = min(indicator_count * 0.03, 0.7)
    bonus = min(source_count * 0.1, 0.25)
    return min(base + bonus, 0.95)


def malware_family_confidence(sample_count: int, source_count: int) -> float:
    base = min(sample_count * 0.04, 0.8)
    bonus = min(source_count * 0.05, 0.15)
    return min(base + bonus, 0.95)


def infrastructure_confidence(subdomain_count: int) -> float:
    return min(0.4 + subdomain_count * 0.08, 0.85)


def pivot_confidence(actor_count: int, source_count: int) -> float:
    actor_weight = min(actor_count * 0.2, 0.3)
    source_weight = min(source_count * 0.1, 0.2)
    return min(0.5 + actor_weight + source_weight, 0.95)


# Helpers


def root_domain(domain: str) -> str:
    """Last two dot-separated labels, lowercased: ``a.b.evil.com`` -> ``evil.com``."""
    parts = domain.lower().rstrip(".").split(".")
    if len(parts) >= 2:
        return ".".join(parts[-2:])
    return domain.lower()


def _distinct(values: Iterable[str]) -> list[str]:
    """Distinct values in first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for v in values:
        if v not in seen:
            seen.add(v)
            result.append(v)
    return result


def _group_by(
    indicators: Iterable[Indicator], key: Callable[[Indicator], Hashable | None]
) -> dict:
    """Group preserving encounter order; indicators whose key is falsy are dropped."""
    groups: dict = {}
    for indicator in indicators:
        k = key(indicator)
        if k:
            groups.setdefault(k, []).append(indicator)
    return groups


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _hour_window(moment: datetime) -> datetime:
    """Start of the UTC hour containing *moment*."""
    return _utc(moment).replace(minute=0, second=0, microsecond=0)


def _sources(indicators: list[Indicator]) -> list[str]:
    return _distinct(i.source for i in indicators)


def _pivot_type(indicator: Indicator) -> PivotType:
    if indicator.kind == IndicatorType.IP_ADDRESS:
        return PivotType.C2_IP_OVERLAP
    if indicator.kind == IndicatorType.DOMAIN:
        return PivotType.C2_DOMAIN_OVERLAP
    return PivotType.INFRASTRUCTURE_OVERLAP


class CorrelationEngine:
    """Runs the correlation passes and the infrastructure pivot pass."""

    def __init__(self, settings: CorrelationSettings | None = None):
        self.settings = settings or CorrelationSettings()
        self._ignored = {d.lower() for d in self.settings.ignored_domains}

    def _is_ignored(self, indicator: Indicator) -> bool:
        return (
            indicator.kind == IndicatorType.DOMAIN
            and root_domain(indicator.value) in self._ignored
        )

    def _limit(self, indicators: list[Indicator]) -> list[Indicator]:
        return indicators[: self.settings.max_indicators_per_correlation]

    def find_correlations(
        self,
        indicators: list[Indicator],
        observations: list[Indicator] | None = None,
    ) -> list[CorrelationResult]:
        """Run every correlation pass and return the results, best first.

        *observations* are the source-tagged copies from before deduplication.
        Cross-source validation needs them to see one value reported by several
        feeds; when omitted it falls back to *indicators*.
        """
        logger.info("Starting correlation analysis on %d indicators", len(indicators))
        cross_source_input = observations if observations is not None else indicators

        passes: list[tuple[str, Callable[[], list[CorrelationResult]]]] = [
            ("cross-source", lambda: self.cross_source_correlations(cross_source_input)),
            ("temporal", lambda: self.temporal_correlations(indicators)),
            ("threat-actor", lambda: self.actor_correlations(indicators)),
            ("malware-family", lambda: self.malware_family_correlations(indicators)),
            ("infrastructure", lambda: self.infrastructure_correlations(indicators)),
        ]

        correlations: list[CorrelationResult] = []
        for name, run in passes:
            try:
                found = run()
            except Exception:
                logger.exception("Error during %s correlation pass", name)
                continue
            logger.debug("%s pass produced %d correlations", name, len(found))
            correlations.extend(found)

        correlations.sort(key=lambda c: c.confidence_score, reverse=True)
        logger.info("Found %d correlations across all analysis types", len(correlations))
        return correlations

    def cross_source_correlations(
        self, indicators: list[Indicator]
    ) -> list[CorrelationResult]:
        """Same value reported by two or more independent sources."""
        groups = _group_by(indicators, lambda i: i.value.lower())
        multi_source = [(k, g) for k, g in groups.items() if len(_sources(g)) > 1]

        results: list[CorrelationResult] = []
        for value, group in multi_source[:CROSS_SOURCE_CAP]:
            sources = _sources(group)
            results.append(
                CorrelationResult(
                    related_indicators=self._limit(group),
                    correlation_type=CorrelationType.CROSS_SOURCE_VALIDATION,
                    confidence_score=cross_source_confidence(len(sources)),
                    description=(
                        f"IOC {value} confirmed by {len(sources)} independent sources"
                    ),
                    details=CrossSourceDetails(
                        sources=sources, validation_count=len(sources)
                    ),
                )
            )
        return results

    def temporal_correlations(
        self, indicators: list[Indicator]
    ) -> list[CorrelationResult]:
        """Bursts of more than ten indicators from several sources in one hour."""
        groups = _group_by(indicators, lambda i: _hour_window(i.created_at))
        busy = [
            (k, g) for k, g in groups.items() if len(g) > TEMPORAL_MIN_INDICATORS
        ]

        results: list[CorrelationResult] = []
        for hour, window in busy[:TEMPORAL_CAP]:
            source_count = len(_sources(window))
            if source_count < 2:
                continue
            results.append(
                CorrelationResult(
                    related_indicators=self._limit(window),
                    correlation_type=CorrelationType.TEMPORAL_CLUSTER,
                    confidence_score=temporal_confidence(len(window), source_count),
                    description=(
                        f"Coordinated threat activity: {len(window)} indicators from "
                        f"{source_count} sources within 1-hour window"
                    ),
                    details=TemporalDetails(
                        time_window=f"{hour:%Y-%m-%d %H}:00",
                        indicator_count=len(window),
                        source_diversity=source_count,
                    ),
                )
            )
        return results

    def actor_correlations(self, indicators: list[Indicator]) -> list[CorrelationResult]:
        """Indicators attributed to the same named actor."""
        groups = _group_by(indicators, lambda i: i.actor_name)
        large = [(k, g) for k, g in groups.items() if len(g) > ACTOR_MIN_INDICATORS]

        results: list[CorrelationResult] = []
        for actor, group in large[:ACTOR_CAP]:
            sources = _sources(group)
            by_type: dict[str, int] = {}
            for indicator in group:
                by_type[indicator.kind.value] = by_type.get(indicator.kind.value, 0) + 1
            results.append(
                CorrelationResult(
                    related_indicators=self._limit(group),
                    correlation_type=CorrelationType.THREAT_ACTOR_ATTRIBUTION,
                    confidence_score=actor_confidence(len(group), len(sources)),
                    description=(
                        f"Threat actor {actor} activities: {len(group)} indicators "
                        f"across {len(sources)} intelligence sources"
                    ),
                    details=ActorAttributionDetails(
                        actor_name=actor,
                        indicator_types=by_type,
                        source_attribution=sources,
                    ),
                )
            )
        return results

    def malware_family_correlations(
        self, indicators: list[Indicator]
    ) -> list[CorrelationResult]:
        """Samples belonging to the same malware family."""
        groups = _group_by(indicators, lambda i: i.malware_family)
        large = [
            (k, g) for k, g in groups.items() if len(g) > MALWARE_FAMILY_MIN_SAMPLES
        ]

        results: list[CorrelationResult] = []
        for family, group in large[:MALWARE_FAMILY_CAP]:
            sources = _sources(group)
            hashes = sum(1 for i in group if i.kind == IndicatorType.FILE_HASH)
            results.append(
                CorrelationResult(
                    related_indicators=self._limit(group),
                    correlation_type=CorrelationType.MALWARE_FAMILY_CLUSTER,
                    confidence_score=malware_family_confidence(len(group), len(sources)),
                    description=(
                        f"Malware family {family}: {len(group)} related samples "
                        f"from {len(sources)} sources"
                    ),
                    details=MalwareFamilyDetails(
                        malware_family=family,
                        sample_count=len(group),
                        hash_count=hashes,
                        source_diversity=len(sources),
                    ),
                )
            )
        return results

    def infrastructure_correlations(
        self, indicators: list[Indicator]
    ) -> list[CorrelationResult]:
        """Domains sharing a root domain, minus the ignored shared-hosting roots."""
        domains = [
            i
            for i in indicators
            if i.kind == IndicatorType.DOMAIN and not self._is_ignored(i)
        ]
        groups = _group_by(domains, lambda i: root_domain(i.value))
        large = [
            (k, g) for k, g in groups.items() if len(g) > INFRASTRUCTURE_MIN_SUBDOMAINS
        ]

        results: list[CorrelationResult] = []
        for root, group in large[:INFRASTRUCTURE_CAP]:
            results.append(
                CorrelationResult(
                    related_indicators=self._limit(group),
                    correlation_type=CorrelationType.INFRASTRUCTURE_CLUSTER,
                    confidence_score=infrastructure_confidence(len(group)),
                    description=(
                        f"Related infrastructure: {len(group)} subdomains under {root}"
                    ),
                    details=InfrastructureDetails(
                        root_domain=root,
                        subdomain_count=len(group),
                        threat_actors=_distinct(i.actor_name for i in group if i.actor_name),
                    ),
                )
            )
        return results

    def find_infrastructure_pivots(
        self, indicators: list[Indicator]
    ) -> list[InfrastructurePivot]:
        """IPs and domains shared by several actors or confirmed by several sources."""
        if not self.settings.enable_infrastructure_pivots:
            logger.info("Infrastructure pivot analysis disabled")
            return []

        pivots: list[InfrastructurePivot] = []
        try:
            logger.info("Starting infrastructure pivot analysis")
            infrastructure = [
                i
                for i in indicators
                if i.kind in (IndicatorType.IP_ADDRESS, IndicatorType.DOMAIN)
                and not self._is_ignored(i)
            ]
            groups = _group_by(infrastructure, lambda i: i.value.lower())

            for group in groups.values():
                if len(group) < 2:
                    continue
                actors = _distinct(i.actor_name for i in group if i.actor_name)
                sources = _sources(group)
                # Duplicate rows from one actor and one source are not a pivot
                if len(actors) < 2 and len(sources) < 2:
                    continue

                shared = group[0]
                first = min(_utc(i.created_at) for i in group)
                last = max(_utc(i.last_seen_at) for i in group)
                pivots.append(
                    InfrastructurePivot(
                        threat_actors=actors,
                        shared_infrastructure=shared,
                        pivot_type=_pivot_type(shared),
                        confidence_score=pivot_confidence(len(actors), len(sources)),
                        evidence=[
                            f"Infrastructure shared by {len(actors)} threat actors",
                            f"Confirmed by {len(sources)} independent intelligence sources",
                            f"First observed: {first:%Y-%m-%d}",
                            f"Last observed: {last:%Y-%m-%d}",
                        ],
                    )
                )
        except Exception:
            logger.exception("Error during infrastructure pivot analysis")

        pivots.sort(key=lambda p: p.confidence_score, reverse=True)
        logger.info("Found %d infrastructure pivots", len(pivots))
        return pivots

    def find_related_indicators(self, indicator: Indicator) -> list[Indicator]:
        """Indicators related to *indicator* from earlier runs.

        Always empty: answering this needs a historical index, and the engine
        only sees the current snapshot. Kept as the hook for one.
        """
        return []
