"""Intelligence feed collectors.

Each collector wraps one upstream feed and turns its JSON into Indicator and
ThreatActor records. Collectors raise on transport or parse failures; the
orchestrator isolates those per collector. Failures on a single item inside a
feed (one OTX pulse, one MalwareBazaar selector) are logged and skipped here.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

import requests

from .config import (
    ATTACK_BUNDLE_MAX_AGE,
    CACHE_DIR,
    REQUEST_TIMEOUT,
    USER_AGENT,
    AppConfig,
    FeedConfig,
)
from .defang import normalize_value
from .models import Indicator, IndicatorType, ThreatActor
from .stix_parser import parse_attack_file

logger = logging.getLogger(__name__)

_REGISTRY: dict[str, type[ThreatCollector]] = {}


def register_collector(name: str):
    def deco(cls):
        _REGISTRY[name] = cls
        return cls
    return deco


def available_collectors() -> list[str]:
    return list(_REGISTRY.keys())


def build_collectors(config: AppConfig) -> list[ThreatCollector]:
    """Instantiate one collector per active feed with a registered type."""
    collectors: list[ThreatCollector] = []
    for feed in config.active_feeds:
        cls = _REGISTRY.get(feed.name.lower())
        if cls is None:
            logger.warning("No collector registered for feed %r, skipping", feed.name)
            continue
        collectors.append(cls(feed))
    return collectors


def _parse_timestamp(raw) -> datetime | None:
    """Parse the ISO-ish timestamps feeds emit into UTC; naive values are taken as UTC."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ThreatCollector(ABC):
    """Base class for a single intelligence feed."""

    name: str = ""
    auth_header: str | None = None
    default_confidence = 75

    def __init__(self, feed: FeedConfig):
        self.feed = feed
        self._session: requests.Session | None = None

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"User-Agent": USER_AGENT})
            self._session.headers.update(self.feed.headers)
            if self.feed.api_key and self.auth_header:
                self._session.headers[self.auth_header] = self.feed.api_key
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.feed.base_url.rstrip('/')}{path}"

    def _polite_get(self, url: str, params: dict | None = None) -> requests.Response:
        """GET with rate-limit delay and timeout."""
        time.sleep(self.feed.request_delay)
        resp = self._get_session().get(url, params=params, timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        return resp

    def _polite_post(self, url: str, data: dict) -> requests.Response:
        """Form POST with rate-limit delay and timeout."""
        time.sleep(self.feed.request_delay)
        resp = self._get_session().post(url, data=data, timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        return resp

    def _get_json(self, url: str, params: dict | None = None) -> dict:
        logger.debug("Fetching %s", url)
        return self._polite_get(url, params=params).json()

    def health_url(self) -> str:
        return self.feed.base_url

    def check_health(self) -> bool:
        """Return True if the feed answers a plain GET."""
        try:
            self._polite_get(self.health_url())
            return True
        except requests.RequestException as e:
            logger.error("Health check failed for %s: %s", self.name, e)
            return False

    def create_indicator(self, value: str, kind: IndicatorType, **fields) -> Indicator:
        fields.setdefault("confidence", self.default_confidence)
        return Indicator(
            value=normalize_value(value, kind),
            kind=kind,
            source=self.name,
            **fields,
        )

    @abstractmethod
    def fetch_indicators(self) -> list[Indicator]:
        ...

    @abstractmethod
    def fetch_actors(self) -> list[ThreatActor]:
        ...


# AlienVault OTX

_OTX_TYPE_MAP = {
    "ipv4": IndicatorType.IP_ADDRESS,
    "ipv6": IndicatorType.IP_ADDRESS,
    "domain": IndicatorType.DOMAIN,
    "hostname": IndicatorType.DOMAIN,
    "url": IndicatorType.URL,
    "filehash-md5": IndicatorType.FILE_HASH,
    "filehash-sha1": IndicatorType.FILE_HASH,
    "filehash-sha256": IndicatorType.FILE_HASH,
    "email": IndicatorType.EMAIL,
}

# Pulse names mentioning one of these are attributed to it
_KNOWN_ACTORS = ["APT", "Lazarus", "Carbanak", "FIN", "Turla", "Sofacy"]

MAX_PULSES = 500
MAX_INDICATORS_PER_PULSE = 500
MAX_OTX_ACTORS = 20


def extract_actor_name(pulse_name: str) -> str | None:
    """Best-effort actor attribution from a pulse title."""
    lowered = pulse_name.lower()
    for actor in _KNOWN_ACTORS:
        if actor.lower() in lowered:
            return actor
    words = pulse_name.split()
    return words[0] if words else None


@register_collector("alienvault_otx")
class AlienVaultCollector(ThreatCollector):
    name = "AlienVault_OTX"
    auth_header = "X-OTX-API-KEY"
    default_confidence = 80

    def __init__(self, feed: FeedConfig):
        super().__init__(feed)
        self._pulses: list[dict] | None = None

    def _recent_pulses(self) -> list[dict]:
        """Subscribed pulses, falling back to public pulses when none come back."""
        if self._pulses is not None:
            return self._pulses

        results: list[dict] = []
        try:
            data = self._get_json(self._url("/pulses/subscribed"), params={"limit": 1000})
            results = data.get("results") or []
        except requests.RequestException as e:
            logger.warning("Subscribed pulses unavailable from %s: %s", self.name, e)

        if not results:
            logger.info("Trying public pulses from %s", self.name)
            data = self._get_json(self._url("/pulses/public"), params={"limit": 500})
            results = data.get("results") or []

        self._pulses = results
        return results

    def _convert(self, raw: dict, pulse: dict) -> Indicator | None:
        kind = _OTX_TYPE_MAP.get(str(raw.get("type", "")).lower())
        value = raw.get("indicator")
        if kind is None or not value:
            return None

        created = _parse_timestamp(raw.get("created")) or _parse_timestamp(
            pulse.get("created")
        )
        last_seen = _parse_timestamp(pulse.get("modified")) or created
        fields = {
            "description": raw.get("description") or pulse.get("description"),
            "actor_name": extract_actor_name(pulse.get("name", "")),
            "tags": list(pulse.get("tags") or []),
        }
        if created:
            fields["created_at"] = created
        if last_seen:
            fields["last_seen_at"] = last_seen
        return self.create_indicator(value, kind, **fields)

    def fetch_indicators(self) -> list[Indicator]:
        pulses = self._recent_pulses()
        if not pulses:
            logger.warning("No pulses received from %s", self.name)
            return []

        indicators: list[Indicator] = []
        for pulse in pulses[:MAX_PULSES]:
            try:
                detail = self._get_json(self._url(f"/pulses/{pulse.get('id')}"))
            except (requests.RequestException, ValueError) as e:
                logger.warning("Skipping pulse %s: %s", pulse.get("id"), e)
                continue

            for raw in (detail.get("indicators") or [])[:MAX_INDICATORS_PER_PULSE]:
                indicator = self._convert(raw, pulse)
                if indicator:
                    indicators.append(indicator)

        logger.info("Collected %d indicators from %s", len(indicators), self.name)
        return indicators

    def fetch_actors(self) -> list[ThreatActor]:
        groups: dict[str, list[dict]] = {}
        for pulse in self._recent_pulses():
            actor_name = extract_actor_name(pulse.get("name", ""))
            if actor_name:
                groups.setdefault(actor_name, []).append(pulse)

        actors: list[ThreatActor] = []
        for actor_name, pulses in list(groups.items())[:MAX_OTX_ACTORS]:
            tags: list[str] = []
            for pulse in pulses:
                for tag in pulse.get("tags") or []:
                    if tag not in tags:
                        tags.append(tag)

            actor = ThreatActor(name=actor_name, country="Unknown", ttps=tags[:10])
            created = [t for t in (_parse_timestamp(p.get("created")) for p in pulses) if t]
            modified = [t for t in (_parse_timestamp(p.get("modified")) for p in pulses) if t]
            if created:
                actor.first_seen = min(created)
            if modified or created:
                actor.last_activity = max(modified or created)
            actors.append(actor)

        logger.info("Collected %d threat actors from %s", len(actors), self.name)
        return actors


# Abuse.ch MalwareBazaar

MAX_SAMPLES = 2000
MAX_SIGNATURE_ACTORS = 25
MAX_TAG_ACTORS = 15
MAX_HASHES_PER_ACTOR = 25

_MALWARE_TAG_KEYWORDS = [
    "mirai", "emotet", "trickbot", "cobalt", "amadey", "lummastealer",
    "coinminer", "ransomware", "trojan", "backdoor", "botnet", "stealer",
]
_PLATFORM_KEYWORDS = ("win", "linux", "android")


def is_malware_tag(tag: str) -> bool:
    lowered = tag.lower()
    return any(keyword in lowered for keyword in _MALWARE_TAG_KEYWORDS)


def size_bucket(file_size: int) -> str:
    if file_size < 1024:
        return "tiny"
    if file_size < 1024 * 1024:
        return "small"
    if file_size < 10 * 1024 * 1024:
        return "medium"
    return "large"


@register_collector("abusech_malwarebazaar")
class AbuseCHCollector(ThreatCollector):
    name = "Abuse.ch_MalwareBazaar"
    auth_header = "Auth-Key"
    default_confidence = 90

    # "time" = last 60 minutes, "100" = last 100 submissions
    selectors = ("time", "100")

    def __init__(self, feed: FeedConfig):
        super().__init__(feed)
        self._samples: list[dict] | None = None

    def _recent_samples(self, selector: str) -> list[dict]:
        resp = self._polite_post(
            self._url("/api/v1/"), data={"query": "get_recent", "selector": selector}
        )
        payload = resp.json()
        data = payload.get("data")
        return data if isinstance(data, list) else []

    def _unique_samples(self) -> list[dict]:
        """Samples from every selector, deduplicated by SHA-256."""
        if self._samples is not None:
            return self._samples

        collected: list[dict] = []
        last_error: Exception | None = None
        succeeded = 0
        for selector in self.selectors:
            try:
                samples = self._recent_samples(selector)
            except (requests.RequestException, ValueError) as e:
                logger.error("%s selector %r failed: %s", self.name, selector, e)
                last_error = e
                continue
            succeeded += 1
            logger.info("%s selector %r returned %d samples", self.name, selector, len(samples))
            collected.extend(samples)

        if succeeded == 0 and last_error is not None:
            raise last_error

        seen: set[str] = set()
        unique: list[dict] = []
        for sample in collected:
            sha256 = sample.get("sha256_hash")
            if not sha256 or sha256 in seen:
                continue
            seen.add(sha256)
            unique.append(sample)

        self._samples = unique[:MAX_SAMPLES]
        return self._samples

    def _sample_tags(self, sample: dict) -> list[str]:
        tags: list[str] = []
        if sample.get("signature"):
            tags.append(f"malware:{sample['signature']}")
        if sample.get("file_type"):
            tags.append(f"filetype:{sample['file_type']}")
        tags.extend((sample.get("tags") or [])[:5])
        file_size = sample.get("file_size") or 0
        if file_size > 0:
            tags.append(f"size:{size_bucket(file_size)}")
        return tags

    def _convert(self, sample: dict) -> Indicator:
        signature = sample.get("signature")
        fields = {
            "description": (
                f"Malware: {signature or 'Unknown'} ({sample.get('file_type') or 'Unknown'})"
            ),
            "malware_family": signature,
            "tags": self._sample_tags(sample),
        }
        first_seen = _parse_timestamp(sample.get("first_seen"))
        last_seen = _parse_timestamp(sample.get("last_seen")) or first_seen
        if first_seen:
            fields["created_at"] = first_seen
        if last_seen:
            fields["last_seen_at"] = last_seen
        return self.create_indicator(sample["sha256_hash"], IndicatorType.FILE_HASH, **fields)

    def fetch_indicators(self) -> list[Indicator]:
        indicators = [self._convert(s) for s in self._unique_samples()]
        logger.info("Collected %d malware indicators from %s", len(indicators), self.name)
        return indicators

    def _actor_from_family(self, family: str, samples: list[dict]) -> ThreatActor:
        actor = ThreatActor(name=f"{family}_Operator", country="Unknown")
        actor.ttps.append(f"Uses {family} malware")

        file_types: list[str] = []
        for sample in samples:
            ft = sample.get("file_type")
            if ft and ft not in file_types:
                file_types.append(ft)
        actor.ttps.extend(f"Deploys {ft} files" for ft in file_types[:5])

        platforms: list[str] = []
        for sample in samples:
            for tag in sample.get("tags") or []:
                if any(p in tag for p in _PLATFORM_KEYWORDS) and tag not in platforms:
                    platforms.append(tag)
        actor.ttps.extend(f"Targets {p} platform" for p in platforms[:3])

        for sample in samples[:MAX_HASHES_PER_ACTOR]:
            actor.indicators.append(
                self.create_indicator(
                    sample["sha256_hash"],
                    IndicatorType.FILE_HASH,
                    malware_family=family,
                )
            )

        seen = [t for t in (_parse_timestamp(s.get("first_seen")) for s in samples) if t]
        if seen:
            actor.first_seen = min(seen)
            actor.last_activity = max(seen)
        return actor

    def fetch_actors(self) -> list[ThreatActor]:
        samples = self._unique_samples()

        by_signature: dict[str, list[dict]] = {}
        by_tag: dict[str, list[dict]] = {}
        for sample in samples:
            if sample.get("signature"):
                by_signature.setdefault(sample["signature"], []).append(sample)
            for tag in sample.get("tags") or []:
                if is_malware_tag(tag):
                    by_tag.setdefault(tag, []).append(sample)

        actors: list[ThreatActor] = []
        signature_groups = [(k, v) for k, v in by_signature.items() if len(v) > 1]
        for family, group in signature_groups[:MAX_SIGNATURE_ACTORS]:
            actors.append(self._actor_from_family(family, group))

        # Top up from tags when signatures alone are thin
        if len(actors) < 10:
            tag_groups = [(k, v) for k, v in by_tag.items() if len(v) > 2]
            for family, group in tag_groups[:MAX_TAG_ACTORS]:
                actors.append(self._actor_from_family(family, group))

        logger.info("Identified %d malware-family actors from %s", len(actors), self.name)
        return actors


# MITRE ATT&CK

ATTACK_BUNDLE_PATH = "/enterprise-attack/enterprise-attack.json"


@register_collector("mitre_attck")
class MitreAttackCollector(ThreatCollector):
    name = "MITRE_ATT&CK"
    default_confidence = 95

    def __init__(self, feed: FeedConfig, cache_dir: Path | None = None):
        super().__init__(feed)
        self.cache_dir = cache_dir or CACHE_DIR

    def health_url(self) -> str:
        return self._url("/README.md")

    def download_bundle(self) -> Path:
        """Download the enterprise bundle unless a fresh cached copy exists."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        dest = self.cache_dir / "enterprise-attack.json"
        if dest.exists() and time.time() - dest.stat().st_mtime < ATTACK_BUNDLE_MAX_AGE:
            return dest

        resp = self._polite_get(self._url(ATTACK_BUNDLE_PATH))
        dest.write_bytes(resp.content)
        return dest

    def fetch_indicators(self) -> list[Indicator]:
        indicators, _ = parse_attack_file(self.download_bundle(), self.name)
        logger.info("Collected %d technique indicators from %s", len(indicators), self.name)
        return indicators

    def fetch_actors(self) -> list[ThreatActor]:
        _, actors = parse_attack_file(self.download_bundle(), self.name)
        logger.info("Collected %d threat actors from %s", len(actors), self.name)
        return actors
