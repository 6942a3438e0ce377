"""Tests for esmon/install_log.py."""

from __future__ import annotations

import json

from esmon.install_log import InstallLogStore, parse_registered_info, port_id


class TestParseRegisteredInfo:
    def test_known_fields(self):
        line = 'I (900) app: ::RegisteredInfo:: ["lacisID:AB12","RegisterStatus:OK","cic:778899","mainssid:Home"]'
        assert parse_registered_info(line) == {
            "lacisID": "AB12",
            "RegisterStatus": "OK",
            "cic": "778899",
            "mainssid": "Home",
        }

    def test_keys_are_case_insensitive_and_unknown_dropped(self):
        line = '::RegisteredInfo:: ["LACISID:X1","color:red","devpass:a:b"]'
        assert parse_registered_info(line) == {"lacisID": "X1", "devpass": "a:b"}

    def test_no_marker(self):
        assert parse_registered_info("WiFi connected") is None

    def test_nothing_useful(self):
        assert parse_registered_info('::RegisteredInfo:: ["foo:bar"]') is None


def test_port_id():
    assert port_id("/dev/cu.usbserial-110") == "_dev_cu_usbserial_110"


class TestInstallLogStore:
    def test_append_and_read_back(self, tmp_path, clock):
        path = tmp_path / "logs" / "install_log.jsonl"
        store = InstallLogStore(str(path), clock)

        key = store.add_entry("/dev/ttyUSB0", {"lacisID": "AB12"}, note="bench 3")

        assert key == "20250101120000__dev_ttyUSB0"
        record = json.loads(path.read_text().strip())
        assert record["key"] == key
        assert record["lacisID"] == "AB12"
        assert record["cic"] == ""
        assert record["note"] == "bench 3"

    def test_recent_newest_first(self, tmp_path, clock):
        store = InstallLogStore(str(tmp_path / "install_log.jsonl"), clock)
        for i in range(4):
            store.add_entry("/dev/ttyUSB0", {"cic": str(i)})
            clock.advance(1)

        recent = store.get_recent(limit=2)
        assert [e["cic"] for e in recent] == ["3", "2"]

    def test_missing_file(self, tmp_path, clock):
        assert InstallLogStore(str(tmp_path / "none.jsonl"), clock).get_recent() == []

    def test_corrupt_lines_skipped(self, tmp_path, clock):
        path = tmp_path / "install_log.jsonl"
        store = InstallLogStore(str(path), clock)
        store.add_entry("/dev/ttyUSB0", {"cic": "1"})
        with open(path, "a") as f:
            f.write("{not json\n\n")
        assert len(store.get_recent()) == 1
