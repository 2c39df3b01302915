"""
Unit tests for state module.

Tests record parsing, rollup arithmetic and the dashboard payload.
"""

import pytest

from traffic_monitor.state import (
    AggregateResult,
    ConnectionRecord,
    GeoRecord,
    MapPoint,
    Rollup,
    RollupEntry,
    coerce_bytes,
)


@pytest.mark.parametrize("value,expected", [
    (100, 100),
    (0, 0),
    (-5, 0),
    (12.9, 12),
    ("2048", 2048),
    ("abc", 0),
    (None, 0),
    (True, 0),
    (float("nan"), 0),
    (float("inf"), 0),
    (float("-inf"), 0),
    (1e400, 0),
])
def test_coerce_bytes(value, expected):
    assert coerce_bytes(value) == expected


class TestConnectionRecord:

    def test_from_dict(self):
        record = ConnectionRecord.from_dict({"user": "alice", "src_ip": "192.168.1.10", "dst_ip": "8.8.8.8",
                                             "api": "google", "upload": 100, "download": 200})

        assert record == ConnectionRecord("alice", "8.8.8.8", "google", 100, 200, "192.168.1.10")

    def test_blank_strings_become_none(self):
        record = ConnectionRecord.from_dict({"user": "  ", "dst_ip": "", "api": None})

        assert record.user is None
        assert record.dst_ip is None
        assert record.api is None
        assert record.upload == 0

    def test_non_mapping_is_empty_record(self):
        assert ConnectionRecord.from_dict("garbage") == ConnectionRecord()


class TestRollup:

    def test_total_is_derived(self):
        entry = RollupEntry(upload_bytes=150, download_bytes=200, connections=2)

        assert entry.total_bytes == 350
        entry.upload_bytes += 50
        assert entry.total_bytes == 400

    def test_add_accumulates(self):
        rollup = Rollup()
        rollup.add("alice", 100, 200)
        rollup.add("alice", 50, 0)

        assert rollup["alice"].to_payload() == {"uploadBytes": 150, "downloadBytes": 200,
                                                "totalBytes": 350, "connections": 2}

    def test_get_or_create_returns_same_entry(self):
        rollup = Rollup()

        assert rollup.get_or_create("a") is rollup.get_or_create("a")
        assert len(rollup) == 1

    def test_sorted_by_total_breaks_ties_by_key(self):
        rollup = Rollup()
        rollup.add("b", 10, 0)
        rollup.add("a", 5, 5)
        rollup.add("c", 100, 0)

        assert [k for k, _ in rollup.sorted_by_total()] == ["c", "a", "b"]
        assert [k for k, _ in rollup.top(1)] == ["c"]

    def test_dimension_sums(self):
        rollup = Rollup()
        rollup.add("a", 1, 2)
        rollup.add("b", 3, 4)

        assert rollup.total_upload_bytes == 4
        assert rollup.total_download_bytes == 6


class TestGeoRecord:

    def test_from_api(self):
        record = GeoRecord.from_api({"latitude": "55.7558", "longitude": 37.6173, "country_name": "Russia",
                                     "city": "Moscow", "country_code2": "RU"})

        assert record == GeoRecord(55.7558, 37.6173, "Russia", "Moscow", "RU")

    def test_missing_labels_are_unknown(self):
        record = GeoRecord.from_api({"latitude": 0, "longitude": 0})

        assert record.country_name == "Unknown"
        assert record.city == "Unknown"
        assert record.country_code is None

    @pytest.mark.parametrize("payload", [
        {"longitude": 0},
        {"latitude": "north", "longitude": 0},
        {"latitude": 91, "longitude": 0},
        {"latitude": 0, "longitude": -181},
        ["not", "an", "object"],
    ])
    def test_invalid_payloads(self, payload):
        with pytest.raises(ValueError):
            GeoRecord.from_api(payload)


class TestAggregateResultPayload:

    def test_payload_shape(self):
        result = AggregateResult()
        result.rollups['user'].add("alice", 150, 200, connections=2)
        result.rollups['ip'].add("8.8.8.8", 150, 200, connections=2)
        result.ip_locations["8.8.8.8"] = GeoRecord(37.386, -122.0838, "United States", "Mountain View", "US")
        result.map_points.append(MapPoint(37.386, -122.0838, 0.58, label="8.8.8.8", total_bytes=350))
        result.totals.total_upload_bytes = 150
        result.totals.total_download_bytes = 200

        payload = result.to_payload()

        assert payload["type"] == "stats_update"
        assert payload["totals"]["totalBytes"] == 350
        assert payload["userStats"]["alice"]["totalBytes"] == 350
        assert payload["topIps"] == [{"ip": "8.8.8.8", "uploadBytes": 150, "downloadBytes": 200,
                                      "totalBytes": 350, "connections": 2,
                                      "country": "United States", "city": "Mountain View"}]
        assert payload["mapPoints"][0]["label"] == "8.8.8.8"
        assert payload["emptyDimensions"] == ["country", "api"]

    def test_top_ips_limited(self):
        result = AggregateResult()
        for i in range(15):
            result.rollups['ip'].add(f"10.0.0.{i}", i, 0)

        payload = result.to_payload(top_n_ips=10)

        assert len(payload["topIps"]) == 10
        assert payload["topIps"][0]["ip"] == "10.0.0.14"
        assert len(payload["ipStats"]) == 15
