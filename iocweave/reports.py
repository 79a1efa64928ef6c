"""JSON, CSV, and Markdown renderings of an AnalysisReport."""

from __future__ import annotations

import csv
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from .models import (
    AnalysisReport,
    CorrelationResult,
    Indicator,
    InfrastructurePivot,
    ThreatActor,
)

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE_PIVOT = 0.8

CSV_HEADER = [
    "Timestamp",
    "Type",
    "Value",
    "Source",
    "Confidence",
    "ThreatActor",
    "MalwareFamily",
    "Tags",
    "Description",
]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _count_by(values) -> dict[str, int]:
    counts: dict[str, int] = {}
    for v in values:
        counts[v] = counts.get(v, 0) + 1
    return counts


def indicator_to_dict(indicator: Indicator) -> dict:
    return {
        "id": indicator.id,
        "value": indicator.value,
        "type": indicator.kind.value,
        "source": indicator.source,
        "confidence": indicator.confidence,
        "created": _iso(indicator.created_at),
        "last_seen": _iso(indicator.last_seen_at),
        "tags": list(indicator.tags),
        "threat_actor": indicator.actor_name,
        "malware_family": indicator.malware_family,
        "description": indicator.description,
    }


def correlation_to_dict(correlation: CorrelationResult) -> dict:
    return {
        "id": correlation.id,
        "correlation_type": correlation.correlation_type.value,
        "description": correlation.description,
        "confidence_score": correlation.confidence_score,
        "discovered_at": _iso(correlation.discovered_at),
        "indicator_count": len(correlation.related_indicators),
        "sources": list(dict.fromkeys(i.source for i in correlation.related_indicators)),
        "analysis_details": correlation.details.as_dict(),
    }


def pivot_to_dict(pivot: InfrastructurePivot) -> dict:
    shared = pivot.shared_infrastructure
    return {
        "id": pivot.id,
        "pivot_type": pivot.pivot_type.value,
        "confidence_score": pivot.confidence_score,
        "discovered_at": _iso(pivot.discovered_at),
        "shared_infrastructure": {
            "value": shared.value,
            "type": shared.kind.value,
            "source": shared.source,
        },
        "threat_actors": list(pivot.threat_actors),
        "evidence": list(pivot.evidence),
        "related_campaigns": list(pivot.related_campaigns),
    }


def actor_to_dict(actor: ThreatActor) -> dict:
    return {
        "name": actor.name,
        "aliases": list(actor.aliases),
        "country": actor.country,
        "motivation": list(actor.motivations),
        "targets": list(actor.targets),
        "ttps": list(actor.ttps),
        "first_seen": _iso(actor.first_seen),
        "last_activity": _iso(actor.last_activity),
        "indicator_count": len(actor.indicators),
        "unique_indicator_types": _count_by(i.kind.value for i in actor.indicators),
        "malware_families": list(
            dict.fromkeys(i.malware_family for i in actor.indicators if i.malware_family)
        ),
    }


def report_to_dict(report: AnalysisReport) -> dict:
    """The summary record; indicators and actors are written by their own reports."""
    return {
        "analysis_completed_at": _iso(report.completed_at),
        "processing_time_ms": report.processing_time_ms,
        "total_indicators": report.total_indicators,
        "total_threat_actors": report.total_threat_actors,
        "indicators_by_type": dict(report.indicators_by_type),
        "indicators_by_source": dict(report.indicators_by_source),
        "indicators_by_confidence": dict(report.indicators_by_confidence),
        "top_threat_actors": [
            {"name": a.name, "indicator_count": a.indicator_count, "ttps": a.ttp_count}
            for a in report.top_threat_actors
        ],
        "top_malware_families": dict(report.top_malware_families),
        "correlations": [correlation_to_dict(c) for c in report.correlations],
        "high_confidence_correlations": [
            c.id for c in report.high_confidence_correlations
        ],
        "infrastructure_pivots": [pivot_to_dict(p) for p in report.infrastructure_pivots],
        "error_message": report.error_message,
    }


def _write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def write_correlation_report(
    correlations: list[CorrelationResult], path: Path, threshold: float
) -> Path:
    data = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "total_correlations": len(correlations),
        "correlation_types": _count_by(c.correlation_type.value for c in correlations),
        "high_confidence_count": sum(
            1 for c in correlations if c.confidence_score >= threshold
        ),
        "correlations": [correlation_to_dict(c) for c in correlations],
    }
    _write_json(path, data)
    logger.info("Wrote %d correlations to %s", len(correlations), path)
    return path


def write_indicator_csv(indicators: list[Indicator], path: Path) -> Path:
    """One row per indicator, most confident first."""
    path.parent.mkdir(parents=True, exist_ok=True)
    ranked = sorted(indicators, key=lambda i: i.confidence, reverse=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for i in ranked:
            writer.writerow(
                [
                    i.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                    i.kind.value,
                    i.value,
                    i.source,
                    i.confidence,
                    i.actor_name or "",
                    i.malware_family or "",
                    "|".join(i.tags),
                    i.description or "",
                ]
            )
    logger.info("Wrote %d indicators to %s", len(indicators), path)
    return path


def write_actor_report(actors: list[ThreatActor], path: Path) -> Path:
    ranked = sorted(actors, key=lambda a: len(a.indicators), reverse=True)
    data = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "total_actors": len(actors),
        "total_indicators": sum(len(a.indicators) for a in actors),
        "total_ttps": sum(len(a.ttps) for a in actors),
        "actors_by_country": _count_by(a.country for a in actors if a.country),
        "threat_actors": [actor_to_dict(a) for a in ranked],
    }
    _write_json(path, data)
    logger.info("Wrote %d threat actors to %s", len(actors), path)
    return path


def write_pivot_report(pivots: list[InfrastructurePivot], path: Path) -> Path:
    ranked = sorted(pivots, key=lambda p: p.confidence_score, reverse=True)
    data = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "total_pivots": len(pivots),
        "pivot_types": _count_by(p.pivot_type.value for p in pivots),
        "high_confidence_pivots": sum(
            1 for p in pivots if p.confidence_score >= HIGH_CONFIDENCE_PIVOT
        ),
        "infrastructure_pivots": [pivot_to_dict(p) for p in ranked],
    }
    _write_json(path, data)
    logger.info("Wrote %d infrastructure pivots to %s", len(pivots), path)
    return path


def executive_summary(report: AnalysisReport) -> str:
    """Markdown summary of a run."""
    lines: list[str] = []
    lines.append("# Threat Intelligence Executive Summary")
    lines.append(f"Generated: {datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S} UTC")
    lines.append(f"Processing Time: {report.processing_time_ms:,}ms")
    lines.append("")

    lines.append("## Key Findings")
    lines.append(f"- **{report.total_indicators:,}** threat indicators processed")
    lines.append(f"- **{report.total_threat_actors:,}** threat actors identified")
    lines.append(f"- **{len(report.correlations):,}** correlations discovered")
    lines.append(
        f"- **{len(report.infrastructure_pivots):,}** infrastructure pivots detected"
    )
    lines.append("")

    if report.indicators_by_source:
        lines.append("## Intelligence Sources")
        for source, count in sorted(
            report.indicators_by_source.items(), key=lambda kv: kv[1], reverse=True
        ):
            lines.append(f"- **{source}**: {count:,} indicators")
        lines.append("")

    if report.top_malware_families:
        lines.append("## Top Malware Families")
        for family, count in report.top_malware_families.items():
            lines.append(f"- **{family}**: {count:,} samples")
        lines.append("")

    if report.high_confidence_correlations:
        lines.append("## High-Confidence Correlations")
        for c in report.high_confidence_correlations[:10]:
            lines.append(
                f"- **{c.correlation_type.value}**: {c.description} "
                f"({c.confidence_score:.1%})"
            )
        lines.append("")

    if report.infrastructure_pivots:
        lines.append("## Infrastructure Pivots")
        for p in report.infrastructure_pivots[:10]:
            lines.append(
                f"- **{p.pivot_type.value}**: {p.shared_infrastructure.value} shared by "
                f"{len(p.threat_actors)} actors ({p.confidence_score:.1%})"
            )
        lines.append("")

    lines.append("## Confidence Distribution")
    for bucket, count in report.indicators_by_confidence.items():
        lines.append(f"- **{bucket}**: {count:,} indicators")

    if report.error_message:
        lines.append("")
        lines.append("## Errors")
        lines.append(f"- {report.error_message}")

    return "\n".join(lines) + "\n"


def write_executive_summary(report: AnalysisReport, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(executive_summary(report), encoding="utf-8")
    logger.info("Wrote executive summary to %s", path)
    return path


def write_all(
    report: AnalysisReport,
    output_dir: Path,
    threshold: float,
    timestamp: str | None = None,
) -> dict[str, Path]:
    """Write every report for one run; returns {report name: path}."""
    if timestamp is None:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    output_dir.mkdir(parents=True, exist_ok=True)

    return {
        "correlations": write_correlation_report(
            report.correlations, output_dir / f"correlations-{timestamp}.json", threshold
        ),
        "indicators": write_indicator_csv(
            report.indicators, output_dir / f"indicators-{timestamp}.csv"
        ),
        "actors": write_actor_report(
            report.actors, output_dir / f"threat-actors-{timestamp}.json"
        ),
        "summary": write_executive_summary(
            report, output_dir / f"executive-summary-{timestamp}.md"
        ),
        "pivots": write_pivot_report(
            report.infrastructure_pivots,
            output_dir / f"infrastructure-pivots-{timestamp}.json",
        ),
    }
