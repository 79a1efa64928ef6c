"""MITRE ATT&CK STIX 2.x bundle extraction."""

from __future__ import annotations

import json
from pathlib import Path

from .models import Indicator, IndicatorType, ThreatActor

MAX_TECHNIQUES = 500
MAX_INTRUSION_SETS = 20
TECHNIQUE_CONFIDENCE = 95

# First matching keyword in an intrusion-set description wins
_MOTIVATION_KEYWORDS = [
    ("financial", "Financial"),
    ("espionage", "Espionage"),
    ("sabotage", "Sabotage"),
]


def _is_live(obj: dict) -> bool:
    return not obj.get("revoked") and not obj.get("x_mitre_deprecated")


def _external_id(obj: dict) -> str | None:
    for ref in obj.get("external_references", []):
        if ref.get("external_id"):
            return ref["external_id"]
    return None


def _technique_tags(obj: dict) -> list[str]:
    tags = ["mitre-attack"]
    for phase in obj.get("kill_chain_phases", [])[:3]:
        if phase.get("phase_name"):
            tags.append(f"tactic:{phase['phase_name']}")
    for platform in obj.get("x_mitre_platforms", [])[:2]:
        tags.append(f"platform:{platform.lower()}")
    return tags


def _motivation(description: str) -> str:
    lowered = description.lower()
    for keyword, label in _MOTIVATION_KEYWORDS:
        if keyword in lowered:
            return label
    return "Unknown"


def technique_to_indicator(obj: dict, source: str) -> Indicator | None:
    """Convert an ``attack-pattern`` object to a REGISTRY-kind indicator.

    ATT&CK techniques have no observable value of their own, so the technique
    id (e.g. ``T1059``) stands in for it.
    """
    name = obj.get("name")
    if not name:
        return None
    return Indicator(
        value=_external_id(obj) or name,
        kind=IndicatorType.REGISTRY,
        source=source,
        confidence=TECHNIQUE_CONFIDENCE,
        description=f"ATT&CK Technique: {name}",
        tags=_technique_tags(obj),
    )


def intrusion_set_to_actor(obj: dict) -> ThreatActor | None:
    """Convert an ``intrusion-set`` object to a ThreatActor profile."""
    name = obj.get("name")
    if not name:
        return None

    actor = ThreatActor(name=name, country="Unknown")
    actor.aliases = [a for a in obj.get("aliases", []) if a != name]

    if obj.get("description"):
        actor.motivations.append(_motivation(obj["description"]))

    mitre_id = _external_id(obj)
    if mitre_id:
        actor.ttps.append(f"MITRE Group: {mitre_id}")
    return actor


def parse_attack_bundle(
    data: dict, source: str
) -> tuple[list[Indicator], list[ThreatActor]]:
    """Extract technique indicators and intrusion-set actors from a bundle."""
    indicators: list[Indicator] = []
    actors: list[ThreatActor] = []

    for obj in data.get("objects", []):
        if not _is_live(obj):
            continue

        obj_type = obj.get("type")
        if obj_type == "attack-pattern" and len(indicators) < MAX_TECHNIQUES:
            indicator = technique_to_indicator(obj, source)
            if indicator:
                indicators.append(indicator)
        elif obj_type == "intrusion-set" and len(actors) < MAX_INTRUSION_SETS:
            actor = intrusion_set_to_actor(obj)
            if actor:
                actors.append(actor)

    return indicators, actors


def parse_attack_file(
    path: Path, source: str
) -> tuple[list[Indicator], list[ThreatActor]]:
    """Parse an ATT&CK STIX JSON file from disk."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return parse_attack_bundle(data, source)
