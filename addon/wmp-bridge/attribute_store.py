"""Persistent per-gateway attributes and the gateway registry file."""

# pylint: disable=broad-exception-caught

from __future__ import annotations

import datetime
import json
import logging
import os
import re
from typing import Any, Callable, Iterator

from config import DEFAULT_UNITS, GATEWAYS_PATH, WMP_PORT
from models import DiscoveryRecord
from parser import normalize_mac

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def iso_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _load_json_file(path: str) -> Any | None:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except Exception as e:
        logger.warning("STORE: cannot read %s: %s", path, e)
        return None


class AttributeStore:
    """Named string attributes of one gateway."""

    def __init__(
        self,
        attributes: dict[str, Any] | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._attrs: dict[str, str] = {
            str(k): str(v) for k, v in (attributes or {}).items() if v is not None
        }
        self._on_change = on_change

    def __contains__(self, name: object) -> bool:
        return name in self._attrs

    def get(self, name: str, default: str | None = None) -> str | None:
        value = self._attrs.get(name)
        return default if value in (None, "") else value

    def get_int(self, name: str, default: int) -> int:
        try:
            return int(float(self._attrs[name]))
        except (KeyError, ValueError):
            return default

    def get_bool(self, name: str, default: bool) -> bool:
        value = self._attrs.get(name, "").strip().lower()
        if value in _TRUE:
            return True
        if value in _FALSE:
            return False
        return default

    def set(self, name: str, value: Any) -> None:
        text = "" if value is None else str(value)
        if self._attrs.get(name) == text:
            return
        self._attrs[name] = text
        if self._on_change is not None:
            self._on_change()

    def as_dict(self) -> dict[str, str]:
        return dict(self._attrs)


class GatewayRegistry:
    """Provisioned gateways, persisted as one JSON file.

    File layout::

        {"gateways": {"<gateway id>": {"attributes": {...}}}, "updated": "..."}
    """

    def __init__(self, path: str = GATEWAYS_PATH) -> None:
        self.path = path
        self._stores: dict[str, AttributeStore] = {}

    def __iter__(self) -> Iterator[tuple[str, AttributeStore]]:
        return iter(list(self._stores.items()))

    def __len__(self) -> int:
        return len(self._stores)

    def __contains__(self, gateway_id: object) -> bool:
        return gateway_id in self._stores

    def get(self, gateway_id: str) -> AttributeStore | None:
        return self._stores.get(gateway_id)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        data = _load_json_file(self.path)
        if not isinstance(data, dict):
            return 0
        gateways = data.get("gateways")
        if not isinstance(gateways, dict):
            return 0
        for gateway_id, entry in gateways.items():
            if str(gateway_id) in self._stores:
                continue
            attrs = entry.get("attributes") if isinstance(entry, dict) else None
            if not isinstance(attrs, dict):
                logger.warning("STORE: malformed entry for %s skipped", gateway_id)
                continue
            self._stores[str(gateway_id)] = AttributeStore(attrs, self.save)
        logger.info("STORE: %s gateway(s) loaded from %s", len(self._stores), self.path)
        return len(self._stores)

    def save(self) -> None:
        payload = {
            "gateways": {
                gid: {"attributes": store.as_dict()} for gid, store in self._stores.items()
            },
            "updated": iso_now(),
        }
        tmp_path = f"{self.path}.tmp"
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except Exception as e:
            logger.error("STORE: cannot write %s: %s", self.path, e)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    @staticmethod
    def make_id(mac: str | None, host: str | None) -> str:
        if mac:
            return f"wmp_{normalize_mac(mac).lower()}"
        return "wmp_" + re.sub(r"[^0-9A-Za-z]+", "_", host or "unknown").strip("_").lower()

    def provision(
        self,
        record: DiscoveryRecord | None = None,
        *,
        host: str | None = None,
        port: int = WMP_PORT,
    ) -> tuple[str, AttributeStore]:
        """Create a gateway entry with its default unit list."""
        mac = normalize_mac(record.mac) if record is not None else ""
        ip = record.ip if record is not None else (host or "")
        gateway_id = self.make_id(mac, ip)
        existing = self._stores.get(gateway_id)
        if existing is not None:
            return gateway_id, existing

        attrs: dict[str, Any] = {
            "IPAddress": ip,
            "Port": port,
            "Units": DEFAULT_UNITS,
        }
        if record is not None:
            attrs.update(
                {
                    "MACAddress": mac,
                    "Model": record.model,
                    "Name": record.name,
                    "Firmware": record.firmware,
                    "SignalDB": record.rssi,
                }
            )
        store = AttributeStore(attrs, self.save)
        self._stores[gateway_id] = store
        self.save()
        logger.info("STORE: provisioned gateway %s at %s", gateway_id, ip)
        return gateway_id, store

    def find_by_mac(self, mac: str) -> str | None:
        mac = normalize_mac(mac)
        for gateway_id, store in self:
            if normalize_mac(store.get("MACAddress", "") or "") == mac:
                return gateway_id
        return None

    def find_by_host(self, host: str) -> str | None:
        for gateway_id, store in self:
            if store.get("IPAddress") == host:
                return gateway_id
        return None

    def update_address(self, gateway_id: str, ip: str) -> bool:
        store = self._stores.get(gateway_id)
        if store is None or store.get("IPAddress") == ip:
            return False
        logger.info(
            "STORE: gateway %s address %s -> %s",
            gateway_id,
            store.get("IPAddress"),
            ip,
        )
        store.set("IPAddress", ip)
        return True
