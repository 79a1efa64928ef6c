"""Tests for the feed collectors."""

import json
import os
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from iocweave.config import AppConfig, FeedConfig
from iocweave.feeds import (
    AbuseCHCollector,
    AlienVaultCollector,
    MitreAttackCollector,
    _parse_timestamp,
    available_collectors,
    build_collectors,
    extract_actor_name,
    is_malware_tag,
    size_bucket,
)
from iocweave.models import IndicatorType


def _mock_response(payload=None, content=b""):
    """Create a mock requests.Response with the given JSON body."""
    resp = MagicMock(spec=requests.Response)
    resp.json.return_value = payload
    resp.content = content
    resp.status_code = 200
    resp.raise_for_status = MagicMock()
    return resp


def _feed(name, base_url="https://feed.example/api", **kwargs):
    kwargs.setdefault("rate_limit_per_minute", 0)
    return FeedConfig(name=name, base_url=base_url, **kwargs)


class TestRegistry:
    def test_builtin_collectors_registered(self):
        assert set(available_collectors()) >= {
            "alienvault_otx",
            "abusech_malwarebazaar",
            "mitre_attck",
        }

    def test_build_skips_inactive_and_unknown(self):
        config = AppConfig(
            feeds=[
                _feed("alienvault_otx"),
                _feed("abusech_malwarebazaar", is_active=False),
                _feed("virustotal"),
            ]
        )

        collectors = build_collectors(config)

        assert len(collectors) == 1
        assert isinstance(collectors[0], AlienVaultCollector)


class TestSession:
    def test_api_key_sent_in_auth_header(self):
        collector = AlienVaultCollector(_feed("alienvault_otx", api_key="secret"))
        session = collector._get_session()
        assert session.headers["X-OTX-API-KEY"] == "secret"

    def test_no_auth_header_without_key(self):
        collector = AbuseCHCollector(_feed("abusech_malwarebazaar"))
        assert "Auth-Key" not in collector._get_session().headers

    def test_extra_headers(self):
        collector = AbuseCHCollector(
            _feed("abusech_malwarebazaar", headers={"X-Trace": "1"})
        )
        assert collector._get_session().headers["X-Trace"] == "1"

    def test_request_delay_from_rate_limit(self):
        assert _feed("x", rate_limit_per_minute=30).request_delay == pytest.approx(2.0)
        assert _feed("x").request_delay == 0.0


class TestHealth:
    @patch.object(AlienVaultCollector, "_polite_get")
    def test_up(self, mock_get):
        mock_get.return_value = _mock_response({})
        assert AlienVaultCollector(_feed("alienvault_otx")).check_health() is True

    @patch.object(AlienVaultCollector, "_polite_get")
    def test_down(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("refused")
        assert AlienVaultCollector(_feed("alienvault_otx")).check_health() is False

    @patch.object(MitreAttackCollector, "_polite_get")
    def test_mitre_checks_readme(self, mock_get, tmp_path):
        mock_get.return_value = _mock_response({})
        collector = MitreAttackCollector(
            _feed("mitre_attck", base_url="https://raw.example/cti"), cache_dir=tmp_path
        )

        collector.check_health()

        mock_get.assert_called_once_with("https://raw.example/cti/README.md")


class TestAlienVault:
    PULSES = {
        "results": [
            {
                "id": "p1",
                "name": "Lazarus Group targets crypto exchanges",
                "description": "Pulse one",
                "tags": ["crypto", "north-korea"],
                "created": "2024-04-01T10:00:00",
                "modified": "2024-04-02T10:00:00",
            },
            {
                "id": "p2",
                "name": "Phishing wave",
                "tags": ["phishing"],
                "created": "2024-04-03T10:00:00.000000",
                "modified": "2024-04-03T11:00:00",
            },
        ]
    }

    DETAILS = {
        "p1": {
            "indicators": [
                {"indicator": "203.0.113[.]7", "type": "IPv4"},
                {"indicator": "Bad.Example.COM", "type": "hostname"},
                {"indicator": "ABCDEF", "type": "FileHash-SHA256"},
                {"indicator": "CVE-2024-0001", "type": "CVE"},
            ]
        },
        "p2": {
            "indicators": [
                {"indicator": "hxxp://phish[.]example/login", "type": "URL"},
            ]
        },
    }

    def _fake_get(self, url, params=None):
        if url.endswith("/pulses/subscribed"):
            return _mock_response(self.PULSES)
        pulse_id = url.rsplit("/", 1)[-1]
        return _mock_response(self.DETAILS[pulse_id])

    def test_fetch_indicators(self):
        collector = AlienVaultCollector(_feed("alienvault_otx"))
        with patch.object(collector, "_polite_get", side_effect=self._fake_get):
            indicators = collector.fetch_indicators()

        assert [(i.value, i.kind) for i in indicators] == [
            ("203.0.113.7", IndicatorType.IP_ADDRESS),
            ("bad.example.com", IndicatorType.DOMAIN),
            ("abcdef", IndicatorType.FILE_HASH),
            ("http://phish.example/login", IndicatorType.URL),
        ]
        first = indicators[0]
        assert first.source == "AlienVault_OTX"
        assert first.confidence == 80
        assert first.actor_name == "Lazarus"
        assert first.tags == ["crypto", "north-korea"]
        assert first.description == "Pulse one"
        assert first.created_at.year == 2024
        assert indicators[3].actor_name == "Phishing"

    def test_public_fallback(self):
        calls = []

        def fake_get(url, params=None):
            calls.append(url)
            if url.endswith("/pulses/subscribed"):
                raise requests.HTTPError("403")
            if url.endswith("/pulses/public"):
                return _mock_response({"results": []})
            raise AssertionError(url)

        collector = AlienVaultCollector(_feed("alienvault_otx"))
        with patch.object(collector, "_polite_get", side_effect=fake_get):
            assert collector.fetch_indicators() == []

        assert calls[-1].endswith("/pulses/public")

    def test_failing_pulse_detail_skipped(self):
        def fake_get(url, params=None):
            if url.endswith("/pulses/subscribed"):
                return _mock_response(self.PULSES)
            if url.endswith("/p1"):
                raise requests.Timeout("slow")
            return _mock_response(self.DETAILS["p2"])

        collector = AlienVaultCollector(_feed("alienvault_otx"))
        with patch.object(collector, "_polite_get", side_effect=fake_get):
            indicators = collector.fetch_indicators()

        assert [i.value for i in indicators] == ["http://phish.example/login"]

    def test_fetch_actors_groups_pulses(self):
        collector = AlienVaultCollector(_feed("alienvault_otx"))
        with patch.object(collector, "_polite_get", side_effect=self._fake_get):
            actors = collector.fetch_actors()

        assert [a.name for a in actors] == ["Lazarus", "Phishing"]
        assert actors[0].ttps == ["crypto", "north-korea"]
        assert actors[0].country == "Unknown"
        assert actors[0].first_seen.day == 1
        assert actors[0].last_activity.day == 2

    def test_pulses_fetched_once(self):
        collector = AlienVaultCollector(_feed("alienvault_otx"))
        with patch.object(collector, "_polite_get", side_effect=self._fake_get) as mock_get:
            collector.fetch_actors()
            collector.fetch_actors()

        assert mock_get.call_count == 1


class TestParseTimestamp:
    def test_offset_converted_to_utc(self):
        parsed = _parse_timestamp("2024-05-01T14:15:00+02:00")
        assert parsed == datetime(2024, 5, 1, 12, 15, tzinfo=timezone.utc)
        assert parsed.utcoffset().total_seconds() == 0
        assert parsed.hour == 12

    def test_zulu(self):
        assert _parse_timestamp("2024-05-01T12:15:00Z").hour == 12

    def test_naive_taken_as_utc(self):
        parsed = _parse_timestamp("2024-05-01 12:15:00")
        assert parsed.tzinfo == timezone.utc

    def test_garbage(self):
        assert _parse_timestamp("yesterday") is None
        assert _parse_timestamp(None) is None
        assert _parse_timestamp(1714565700) is None


class TestExtractActorName:
    def test_known_actor(self):
        assert extract_actor_name("New APT campaign") == "APT"

    def test_known_actor_case_insensitive(self):
        assert extract_actor_name("turla returns") == "Turla"

    def test_first_word_fallback(self):
        assert extract_actor_name("Qakbot resurgence") == "Qakbot"

    def test_empty(self):
        assert extract_actor_name("") is None


class TestAbuseCH:
    def _sample(self, sha, signature="Emotet", tags=("exe", "win"), **extra):
        sample = {
            "sha256_hash": sha,
            "signature": signature,
            "file_type": "exe",
            "file_size": 2048,
            "tags": list(tags),
            "first_seen": "2024-04-01 08:30:00",
        }
        sample.update(extra)
        return sample

    def test_fetch_indicators_dedups_across_selectors(self):
        batch_one = {"data": [self._sample("A" * 64), self._sample("b" * 64)]}
        batch_two = {"data": [self._sample("A" * 64)]}
        collector = AbuseCHCollector(_feed("abusech_malwarebazaar"))

        with patch.object(
            collector,
            "_polite_post",
            side_effect=[_mock_response(batch_one), _mock_response(batch_two)],
        ):
            indicators = collector.fetch_indicators()

        assert [i.value for i in indicators] == ["a" * 64, "b" * 64]
        first = indicators[0]
        assert first.kind == IndicatorType.FILE_HASH
        assert first.source == "Abuse.ch_MalwareBazaar"
        assert first.confidence == 90
        assert first.malware_family == "Emotet"
        assert first.description == "Malware: Emotet (exe)"
        assert first.tags == [
            "malware:Emotet", "filetype:exe", "exe", "win", "size:small"
        ]

    def test_one_selector_failing(self):
        collector = AbuseCHCollector(_feed("abusech_malwarebazaar"))
        with patch.object(
            collector,
            "_polite_post",
            side_effect=[
                requests.ConnectionError("reset"),
                _mock_response({"data": [self._sample("c" * 64)]}),
            ],
        ):
            assert len(collector.fetch_indicators()) == 1

    def test_all_selectors_failing_raises(self):
        collector = AbuseCHCollector(_feed("abusech_malwarebazaar"))
        with patch.object(
            collector, "_polite_post", side_effect=requests.ConnectionError("reset")
        ):
            with pytest.raises(requests.ConnectionError):
                collector.fetch_indicators()

    def test_no_results_status(self):
        collector = AbuseCHCollector(_feed("abusech_malwarebazaar"))
        with patch.object(
            collector,
            "_polite_post",
            return_value=_mock_response({"query_status": "no_results"}),
        ):
            assert collector.fetch_indicators() == []

    def test_fetch_actors_from_signatures(self):
        samples = [
            self._sample("1" * 64, signature="Emotet"),
            self._sample("2" * 64, signature="Emotet", file_type="dll"),
            self._sample("3" * 64, signature="Mirai", tags=["elf"]),
        ]
        collector = AbuseCHCollector(_feed("abusech_malwarebazaar"))
        collector.selectors = ("time",)

        with patch.object(
            collector, "_polite_post", return_value=_mock_response({"data": samples})
        ):
            actors = collector.fetch_actors()

        assert [a.name for a in actors] == ["Emotet_Operator"]
        emotet = actors[0]
        assert emotet.ttps == [
            "Uses Emotet malware",
            "Deploys exe files",
            "Deploys dll files",
            "Targets win platform",
        ]
        assert len(emotet.indicators) == 2
        assert all(i.malware_family == "Emotet" for i in emotet.indicators)

    def test_fetch_actors_tops_up_from_tags(self):
        samples = [
            self._sample(str(n) * 64, signature=None, tags=["Mirai"]) for n in range(3)
        ]
        collector = AbuseCHCollector(_feed("abusech_malwarebazaar"))
        collector.selectors = ("time",)

        with patch.object(
            collector, "_polite_post", return_value=_mock_response({"data": samples})
        ):
            actors = collector.fetch_actors()

        assert [a.name for a in actors] == ["Mirai_Operator"]


class TestMalwareHelpers:
    def test_is_malware_tag(self):
        assert is_malware_tag("LummaStealer")
        assert is_malware_tag("ransomware")
        assert not is_malware_tag("exe")

    @pytest.mark.parametrize(
        "size,bucket",
        [(10, "tiny"), (1024, "small"), (1024 * 1024, "medium"), (50 * 1024 * 1024, "large")],
    )
    def test_size_bucket(self, size, bucket):
        assert size_bucket(size) == bucket


class TestMitreAttack:
    BUNDLE = {
        "objects": [
            {
                "type": "attack-pattern",
                "name": "Phishing",
                "external_references": [
                    {"source_name": "mitre-attack", "external_id": "T1566"}
                ],
            },
            {
                "type": "intrusion-set",
                "name": "FIN7",
                "description": "financially motivated",
                "external_references": [
                    {"source_name": "mitre-attack", "external_id": "G0046"}
                ],
            },
        ]
    }

    def test_downloads_and_parses(self, tmp_path):
        collector = MitreAttackCollector(_feed("mitre_attck"), cache_dir=tmp_path)
        content = json.dumps(self.BUNDLE).encode()

        with patch.object(
            collector, "_polite_get", return_value=_mock_response(content=content)
        ) as mock_get:
            indicators = collector.fetch_indicators()
            actors = collector.fetch_actors()

        assert [i.value for i in indicators] == ["T1566"]
        assert indicators[0].source == "MITRE_ATT&CK"
        assert [a.name for a in actors] == ["FIN7"]
        # Second fetch reads the cached bundle
        assert mock_get.call_count == 1

    def test_stale_cache_redownloaded(self, tmp_path):
        cached = tmp_path / "enterprise-attack.json"
        cached.write_text(json.dumps({"objects": []}), encoding="utf-8")
        stale = time.time() - 2 * 24 * 60 * 60
        os.utime(cached, (stale, stale))

        collector = MitreAttackCollector(_feed("mitre_attck"), cache_dir=tmp_path)
        content = json.dumps(self.BUNDLE).encode()
        with patch.object(
            collector, "_polite_get", return_value=_mock_response(content=content)
        ):
            indicators = collector.fetch_indicators()

        assert len(indicators) == 1

    def test_download_failure_propagates(self, tmp_path):
        collector = MitreAttackCollector(_feed("mitre_attck"), cache_dir=tmp_path)
        with patch.object(
            collector, "_polite_get", side_effect=requests.HTTPError("404")
        ):
            with pytest.raises(requests.HTTPError):
                collector.fetch_indicators()
