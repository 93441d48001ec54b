"""
lookup.py — Resolve a validated plate against the DVLA records backend.

Two REST calls per plate (Bearer token auth):

  GET {api_url}/vehicles/search/{plate}
      → {"success": true, "data": {"vehicles": [ {...}, ... ]}}
  GET {api_url}/fines/search/{plate}
      → {"success": true, "data": {"fines": [ {...}, ... ]}}

The search endpoints do substring matching, so we pick the vehicle whose
license_plate (or reg_number) is *exactly* our plate, ignoring case and
separators.  No such vehicle → None ("not registered").  Fines that are
not paid (unpaid / partial / overdue) count as outstanding violations.

LookupCache
───────────
Continuous scanning sees the same car many times in a row.  A small
time-windowed cache keeps the last answer per plate so the backend isn't
hit every 1.5 seconds.  Failures are never cached.
"""

import abc
import asyncio
import logging
import threading
import time
from typing import Dict, Optional, Tuple

import requests

from .errors import VehicleLookupError
from .grammar import normalize_text, same_plate
from .results import LookupResult

logger = logging.getLogger(__name__)

PAID_STATUSES = {"paid", "cleared"}


class VehicleLookup(abc.ABC):
    """Plate → LookupResult (or None when the plate is not registered)."""

    @abc.abstractmethod
    async def lookup(self, plate: str) -> Optional[LookupResult]:
        """Raises VehicleLookupError when the backend can't be queried."""


class HttpVehicleLookup(VehicleLookup):
    """Query the records backend over HTTP with ``requests``.

    Args:
        config: Full app config dict — we read the "lookup" section.
        session: Optional ``requests.Session`` (connection reuse, tests).
    """

    def __init__(self, config: dict, session: Optional[requests.Session] = None):
        cfg = config["lookup"]
        self.api_url: str = cfg["api_url"].rstrip("/")
        self.api_token: str = cfg["api_token"]
        self.timeout: float = cfg["timeout"]
        self.session = session or requests.Session()

    async def lookup(self, plate: str) -> Optional[LookupResult]:
        return await asyncio.to_thread(self.lookup_sync, plate)

    def lookup_sync(self, plate: str) -> Optional[LookupResult]:
        # 1. Vehicle record (exact match only)
        vehicles = self._get(f"vehicles/search/{plate}").get("vehicles") or []
        vehicle = _find_vehicle(vehicles, plate)
        if vehicle is None:
            logger.info("LOOKUP  %s  not registered", plate)
            return None

        # 2. Fines, filtered back down to this exact plate
        fines = self._get(f"fines/search/{plate}").get("fines") or []
        fines = [f for f in fines if _fine_matches(f, plate)]
        outstanding = [f for f in fines if _is_outstanding(f)]

        # 3. Flatten into what the officer sees
        result = LookupResult(
            plate=str(plate),
            make=vehicle.get("manufacturer") or vehicle.get("make") or "",  # older rows use "make"
            model=vehicle.get("model") or "",
            year=_as_int(vehicle.get("year")),
            owner_name=vehicle.get("owner_name") or "Unknown",
            registration_status=vehicle.get("status") or "",
            outstanding_violations=len(outstanding),
            fines=[_fine_summary(f) for f in outstanding],
        )
        logger.info(
            "LOOKUP  %s  %s  owner=%s  %s",
            plate, result.vehicle_model or "?", result.owner_name, result.violation_summary,
        )
        return result

    def _get(self, path: str) -> dict:
        """GET ``{api_url}/{path}`` and return the response's "data" object."""
        headers = {"Accept": "application/json"}
        # No token → anonymous request; the backend decides what that may see
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        url = f"{self.api_url}/{path}"
        try:
            resp = self.session.get(url, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as exc:
            raise VehicleLookupError(f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise VehicleLookupError(f"GET {url} returned invalid JSON") from exc

        # The backend answers 200 with success=false for some errors
        if not isinstance(body, dict) or body.get("success") is False:
            message = body.get("message") if isinstance(body, dict) else body
            raise VehicleLookupError(f"GET {url}: {message}")
        return body.get("data") or {}


# ═══════════════════════════════════════════════════════════════════════════
#  Caching
# ═══════════════════════════════════════════════════════════════════════════

class LookupCache:
    """Time-windowed memory of the last lookup result per plate.

    Thread-safe.  A cached ``None`` (not registered) is a real answer and
    is remembered like any other.

    Args:
        window_seconds: How long a result stays valid.
    """

    _MISS = object()

    def __init__(self, window_seconds: float = 60):
        self._window = window_seconds
        self._seen: Dict[str, Tuple[float, Optional[LookupResult]]] = {}
        self._lock = threading.Lock()

    def get(self, plate: str):
        """Cached result, or LookupCache._MISS if absent/expired."""
        now = time.time()
        key = normalize_text(plate)
        with self._lock:
            # Prune old entries to keep memory bounded
            self._seen = {
                p: v for p, v in self._seen.items() if now - v[0] < self._window
            }
            if key in self._seen:
                return self._seen[key][1]
        return self._MISS

    def put(self, plate: str, result: Optional[LookupResult]):
        # Keyed on the bare characters so "GR-1234-20" and "GR 1234 20" share a slot
        with self._lock:
            self._seen[normalize_text(plate)] = (time.time(), result)

    def clear(self):
        with self._lock:
            self._seen.clear()

    def is_miss(self, value) -> bool:
        return value is self._MISS


class CachedVehicleLookup(VehicleLookup):
    """Wrap another VehicleLookup with a LookupCache."""

    def __init__(self, inner: VehicleLookup, window_seconds: float = 60):
        self.inner = inner
        self.cache = LookupCache(window_seconds)

    async def lookup(self, plate: str) -> Optional[LookupResult]:
        cached = self.cache.get(plate)
        if not self.cache.is_miss(cached):
            logger.debug("Lookup cache hit: %s", plate)
            return cached
        result = await self.inner.lookup(plate)
        # Only reached on success; a VehicleLookupError skips the put
        self.cache.put(plate, result)
        return result


def build_lookup(config: dict) -> VehicleLookup:
    lookup = HttpVehicleLookup(config)
    window = config["lookup"]["cache_seconds"]
    return CachedVehicleLookup(lookup, window) if window > 0 else lookup


# ═══════════════════════════════════════════════════════════════════════════
#  Private helpers
# ═══════════════════════════════════════════════════════════════════════════

def _find_vehicle(vehicles, plate: str) -> Optional[dict]:
    # license_plate wins over reg_number when both could match
    for v in vehicles:
        if same_plate(v.get("license_plate") or "", plate):
            return v
    for v in vehicles:
        if same_plate(v.get("reg_number") or "", plate):
            return v
    return None


def _fine_matches(fine: dict, plate: str) -> bool:
    vehicle = fine.get("dvla_vehicles") or fine.get("vehicle")
    if not vehicle:
        return True  # no join data; trust the backend's search
    return same_plate(vehicle.get("license_plate") or "", plate)


def _is_outstanding(fine: dict) -> bool:
    if fine.get("marked_as_cleared"):
        return False
    return (fine.get("payment_status") or "unpaid").lower() not in PAID_STATUSES


def _fine_summary(fine: dict) -> dict:
    return {
        "fine_id": fine.get("fine_id"),
        "offense": fine.get("offense_description", ""),
        "amount": fine.get("amount"),
        "payment_status": fine.get("payment_status"),
    }


def _as_int(value) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
