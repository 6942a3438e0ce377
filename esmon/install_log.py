"""
Install log sidecar.

Provisioning firmware prints a one-line registration record once it has
joined the network, e.g.

    ::RegisteredInfo:: ["lacisID:AB12","RegisterStatus:OK","cic:778899",...]

Each such line becomes one JSON object in an append-only JSONL file so
install history survives restarts and can be tailed by other tools.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional

import portalocker

from .interfaces import ClockInterface

logger = logging.getLogger(__name__)

REGISTERED_INFO_PATTERN = re.compile(r"::RegisteredInfo::\s*\[([^\]]*)\]")

# Lower-cased key on the wire -> field name in the stored entry
INSTALL_FIELDS = {
    "lacisid": "lacisID",
    "registerstatus": "RegisterStatus",
    "cic": "cic",
    "mainssid": "mainssid",
    "mainpass": "mainpass",
    "altssid": "altssid",
    "altpass": "altpass",
    "devssid": "devssid",
    "devpass": "devpass",
}


def parse_registered_info(line: str) -> Optional[dict[str, str]]:
    """Pull the known key:value pairs out of a RegisteredInfo line."""
    match = REGISTERED_INFO_PATTERN.search(line)
    if not match:
        return None

    result: dict[str, str] = {}
    for pair in match.group(1).split(","):
        pair = pair.strip().strip('"')
        key, sep, value = pair.partition(":")
        if not sep or not key:
            continue
        field = INSTALL_FIELDS.get(key.lower())
        if field:
            result[field] = value
    return result or None


def port_id(port: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", port)


class InstallLogStore:
    """Append-only JSONL install log, locked with portalocker per write."""

    def __init__(self, path: str, clock: ClockInterface):
        self._path = path
        self._clock = clock

    @property
    def path(self) -> str:
        return self._path

    def add_entry(self, port: str, info: dict[str, str], note: str = "") -> str:
        """Persist one entry and return its key (YYYYMMDDHHMMSS_<port-id>)."""
        key = f"{self._clock.now().strftime('%Y%m%d%H%M%S')}_{port_id(port)}"
        record: dict[str, Any] = {"key": key, "port": port, "note": note}
        for field in INSTALL_FIELDS.values():
            record[field] = info.get(field, "")

        os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as f:
            portalocker.lock(f, portalocker.LOCK_EX)
            try:
                f.write(json.dumps(record, sort_keys=True) + "\n")
                f.flush()
            finally:
                portalocker.unlock(f)

        logger.info("Install log entry added: %s (%s)", key, port)
        return key

    def get_recent(self, limit: int = 5) -> list[dict[str, Any]]:
        """Newest entries first. Lines that fail to parse are skipped."""
        if not os.path.exists(self._path):
            return []
        entries = []
        with open(self._path, "r", encoding="utf-8", errors="replace") as f:
            portalocker.lock(f, portalocker.LOCK_SH)
            try:
                for raw in f:
                    raw = raw.strip()
                    if not raw:
                        continue
                    try:
                        entries.append(json.loads(raw))
                    except json.JSONDecodeError:
                        logger.warning("Skipping corrupt install log line in %s", self._path)
            finally:
                portalocker.unlock(f)
        entries.sort(key=lambda e: e.get("key", ""), reverse=True)
        return entries[:limit]
