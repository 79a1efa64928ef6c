"""Collection orchestrator: parallel feed fan-out, dedup, actor merge, full run."""

from __future__ import annotations

import concurrent.futures
import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import TypeVar

from .config import CorrelationSettings
from .correlation import CorrelationEngine
from .feeds import ThreatCollector
from .models import AnalysisReport, Indicator, ThreatActor, TopActor

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOP_N = 10


def confidence_bucket(confidence: int) -> str:
    if confidence >= 90:
        return "High"
    if confidence >= 70:
        return "Medium"
    if confidence >= 50:
        return "Low"
    return "Very Low"


def deduplicate_indicators(indicators: Sequence[Indicator]) -> list[Indicator]:
    """One indicator per (lowercased value, kind), keeping the most confident.

    Ties keep the copy encountered first. Output follows the order in which
    each key was first seen.
    """
    best: dict[tuple, Indicator] = {}
    for indicator in indicators:
        current = best.get(indicator.identity)
        if current is None or indicator.confidence > current.confidence:
            best[indicator.identity] = indicator
    return list(best.values())


def _union(target: list, extra: list, key: Callable = lambda x: x) -> list:
    seen = {key(x) for x in target}
    result = list(target)
    for item in extra:
        k = key(item)
        if k not in seen:
            seen.add(k)
            result.append(item)
    return result


def merge_actor_profiles(actors: Sequence[ThreatActor]) -> ThreatActor:
    """Fold same-named actor profiles into one.

    The profile with the most indicators is the base (first one on a tie);
    aliases, TTPs, targets, and motivations from the others are unioned in by
    exact string and indicators by identity. The inputs are not modified.
    """
    if not actors:
        raise ValueError("cannot merge an empty group of actor profiles")

    primary = max(actors, key=lambda a: len(a.indicators))
    merged = ThreatActor(
        name=primary.name,
        aliases=list(primary.aliases),
        country=primary.country,
        motivations=list(primary.motivations),
        targets=list(primary.targets),
        ttps=list(primary.ttps),
        indicators=list(primary.indicators),
        first_seen=primary.first_seen,
        last_activity=primary.last_activity,
    )

    for actor in actors:
        if actor is primary:
            continue
        merged.aliases = _union(merged.aliases, actor.aliases)
        merged.ttps = _union(merged.ttps, actor.ttps)
        merged.targets = _union(merged.targets, actor.targets)
        merged.motivations = _union(merged.motivations, actor.motivations)
        merged.indicators = _union(
            merged.indicators, actor.indicators, key=lambda i: i.identity
        )
        merged.first_seen = min(merged.first_seen, actor.first_seen)
        merged.last_activity = max(merged.last_activity, actor.last_activity)

    return merged


def merge_actors(actors: Sequence[ThreatActor]) -> list[ThreatActor]:
    """Group by lowercased name and merge each group."""
    groups: dict[str, list[ThreatActor]] = {}
    for actor in actors:
        groups.setdefault(actor.key, []).append(actor)
    return [
        group[0] if len(group) == 1 else merge_actor_profiles(group)
        for group in groups.values()
    ]


class Orchestrator:
    """Runs every collector in parallel and hands the merged snapshot to the engine."""

    def __init__(
        self,
        collectors: Sequence[ThreatCollector],
        engine: CorrelationEngine | None = None,
        settings: CorrelationSettings | None = None,
    ):
        self.collectors = list(collectors)
        self.settings = settings or CorrelationSettings()
        self.engine = engine or CorrelationEngine(self.settings)

    def _fan_out(
        self, label: str, fetch: Callable[[ThreatCollector], list[T]]
    ) -> list[T]:
        """Call *fetch* on every collector concurrently.

        A collector that raises contributes nothing. Results are concatenated
        in collector order once every call has settled.
        """
        if not self.collectors:
            return []

        def _run(collector: ThreatCollector) -> list[T]:
            logger.info("Collecting %s from %s", label, collector.name)
            items = fetch(collector)
            logger.info("%s: %d %s", collector.name, len(items), label)
            return items

        workers = min(self.settings.max_concurrent_requests, len(self.collectors))
        combined: list[T] = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
            futures = [(c, ex.submit(_run, c)) for c in self.collectors]
            for collector, fut in futures:
                try:
                    combined.extend(fut.result())
                except Exception:
                    logger.exception("Failed to collect %s from %s", label, collector.name)
        return combined

    def gather_indicators(self) -> list[Indicator]:
        """Every source-tagged indicator from every collector, not yet deduplicated."""
        return self._fan_out("indicators", lambda c: c.fetch_indicators())

    def collect_indicators(self) -> list[Indicator]:
        observations = self.gather_indicators()
        unique = deduplicate_indicators(observations)
        logger.info(
            "Deduplicated %d indicators to %d unique indicators",
            len(observations),
            len(unique),
        )
        return unique

    def collect_actors(self) -> list[ThreatActor]:
        actors = self._fan_out("threat actors", lambda c: c.fetch_actors())
        merged = merge_actors(actors)
        logger.info("Merged %d actor profiles into %d actors", len(actors), len(merged))
        return merged

    def check_health(self) -> dict[str, bool]:
        """Liveness of every collector; a check that raises counts as down."""
        status: dict[str, bool] = {}
        if not self.collectors:
            return status
        workers = min(self.settings.max_concurrent_requests, len(self.collectors))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
            futures = [(c, ex.submit(c.check_health)) for c in self.collectors]
            for collector, fut in futures:
                try:
                    status[collector.name] = bool(fut.result())
                except Exception:
                    logger.exception("Health check raised for %s", collector.name)
                    status[collector.name] = False
        return status

    def execute_full_analysis(self) -> AnalysisReport:
        """Collect, correlate, and summarise. Always returns a report."""
        started = time.perf_counter()
        report = AnalysisReport()

        try:
            logger.info("Starting threat intelligence analysis")

            observations = self.gather_indicators()
            indicators = deduplicate_indicators(observations)
            report.indicators = indicators
            report.total_indicators = len(indicators)
            logger.info(
                "Collected %d total threat indicators (%d before dedup)",
                len(indicators),
                len(observations),
            )

            actors = self.collect_actors()
            report.actors = actors
            report.total_threat_actors = len(actors)

            report.correlations = self.engine.find_correlations(indicators, observations)
            report.infrastructure_pivots = self.engine.find_infrastructure_pivots(
                observations
            )

            self._summarise(report, indicators, actors)
        except Exception as e:
            logger.exception("Error during threat intelligence analysis")
            report.error_message = str(e) or type(e).__name__
        finally:
            report.completed_at = datetime.now(timezone.utc)
            report.processing_time_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "Analysis complete in %dms - %d indicators, %d correlations, %d pivots",
            report.processing_time_ms,
            report.total_indicators,
            len(report.correlations),
            len(report.infrastructure_pivots),
        )
        return report

    def _summarise(
        self,
        report: AnalysisReport,
        indicators: list[Indicator],
        actors: list[ThreatActor],
    ) -> None:
        for indicator in indicators:
            kind = indicator.kind.value
            report.indicators_by_type[kind] = report.indicators_by_type.get(kind, 0) + 1
            report.indicators_by_source[indicator.source] = (
                report.indicators_by_source.get(indicator.source, 0) + 1
            )
            bucket = confidence_bucket(indicator.confidence)
            report.indicators_by_confidence[bucket] = (
                report.indicators_by_confidence.get(bucket, 0) + 1
            )

        ranked = sorted(actors, key=lambda a: len(a.indicators), reverse=True)
        report.top_threat_actors = [
            TopActor(name=a.name, indicator_count=len(a.indicators), ttp_count=len(a.ttps))
            for a in ranked[:TOP_N]
        ]

        families: dict[str, int] = {}
        for indicator in indicators:
            if indicator.malware_family:
                families[indicator.malware_family] = (
                    families.get(indicator.malware_family, 0) + 1
                )
        top_families = sorted(families.items(), key=lambda kv: kv[1], reverse=True)
        report.top_malware_families = dict(top_families[:TOP_N])

        threshold = self.settings.min_confidence_threshold
        report.high_confidence_correlations = [
            c for c in report.correlations if c.confidence_score >= threshold
        ]
