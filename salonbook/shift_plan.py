"""HTTP client for the external shift planning service."""
from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any, Optional

import requests

from .availability.intervals import resolve_timezone
from .availability.types import Interval

logger = logging.getLogger(__name__)

CONTROL_PLANE_SOURCE = "control-plane"
CUID_PATTERN = re.compile(r"^c[a-z0-9]{20,}$")
RESOLVE_CACHE_TTL_SECONDS = 5 * 60


class ShiftPlanError(Exception):
    """Raised when a shift plan cannot be fetched or parsed."""


_resolved_cache: dict[str, tuple[float, Optional[str]]] = {}
_resolved_lock = threading.Lock()


def clear_resolve_cache() -> None:
    with _resolved_lock:
        _resolved_cache.clear()


def base_shift_plan_staff_id(staff) -> str:
    """Staff provisioned by the control plane are known there by their code."""
    code = (staff.code or "").strip()
    metadata = staff.meta if isinstance(staff.meta, dict) else {}
    if metadata.get("source") == CONTROL_PLANE_SOURCE and code:
        return code
    return str(staff.staff_id)


def looks_like_cuid(value: str) -> bool:
    return bool(CUID_PATTERN.match(value))


def month_keys(window: Interval, timezone: str) -> list[str]:
    """``YYYY-MM`` keys for every local month the window touches."""
    tz = resolve_timezone(timezone)
    start = window.start.astimezone(tz)
    end = window.end.astimezone(tz)
    keys = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        keys.append(f"{year:04d}-{month:02d}")
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return keys


class ShiftPlanClient:
    def __init__(
        self,
        base_url: Optional[str],
        secret: Optional[str],
        tenant_id: Optional[str],
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.secret = secret
        self.tenant_id = (tenant_id or "").strip() or None
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config, tenant_id: Optional[str]) -> "ShiftPlanClient":
        return cls(
            config.get("CONTROL_PLANE_URL"),
            config.get("PROVISION_SECRET"),
            tenant_id,
            timeout=config.get("SHIFT_PLAN_TIMEOUT_SECONDS", 10),
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.secret and self.tenant_id)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["x-provision-secret"] = self.secret
        return headers

    def _require_configured(self) -> None:
        if not self.base_url or not self.secret:
            raise ShiftPlanError("CONTROL_PLANE_URL/PROVISION_SECRET not configured")
        if not self.tenant_id:
            raise ShiftPlanError("tenant id missing")

    def _get(self, path: str, params: dict[str, str]) -> requests.Response:
        try:
            return self.session.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ShiftPlanError(f"shift plan request failed: {exc}") from exc

    @staticmethod
    def _json(response: requests.Response) -> Any:
        if not response.content or not response.content.strip():
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def get_shift_plan(self, staff_id: str, month_key: Optional[str] = None) -> dict[str, Any]:
        """Return ``{staffId, monthKey, days}`` for one staff member and month."""
        self._require_configured()
        params = {"tenantId": self.tenant_id, "staffId": staff_id}
        if month_key:
            params["month"] = month_key
        response = self._get("/api/internal/shift-plan/staff", params)
        payload = self._json(response)
        if not response.ok:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ShiftPlanError(message or f"HTTP {response.status_code}")
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not isinstance(payload, dict) or not isinstance(payload.get("days"), list):
            raise ShiftPlanError("unexpected shift plan payload")
        return payload

    def resolve_staff_id(self, lookup: dict[str, Optional[str]]) -> Optional[str]:
        """Ask the planner which of its employees matches ``lookup``; None when unknown."""
        self._require_configured()
        params = {"tenantId": self.tenant_id}
        for key in ("staffId", "email", "firstName", "lastName", "displayName"):
            value = (lookup.get(key) or "").strip()
            if value:
                params[key] = value
        cache_key = "|".join(f"{key}={value}" for key, value in sorted(params.items()))

        with _resolved_lock:
            cached = _resolved_cache.get(cache_key)
            if cached and time.monotonic() - cached[0] < RESOLVE_CACHE_TTL_SECONDS:
                return cached[1]

        response = self._get("/api/internal/staff/shift-plan", params)
        if response.status_code == 404:
            resolved = None
        else:
            payload = self._json(response)
            if not response.ok:
                message = payload.get("message") if isinstance(payload, dict) else None
                raise ShiftPlanError(message or f"HTTP {response.status_code}")
            value = payload.get("staffId") if isinstance(payload, dict) else None
            resolved = value.strip() if isinstance(value, str) and value.strip() else None

        with _resolved_lock:
            _resolved_cache[cache_key] = (time.monotonic(), resolved)
        return resolved

    def external_staff_id(self, staff) -> str:
        """Planner id for a local staff row, falling back to the local id."""
        base_id = base_shift_plan_staff_id(staff)
        if looks_like_cuid(base_id):
            return base_id
        lookup = {
            "staffId": base_id,
            "email": staff.email,
            "firstName": staff.first_name,
            "lastName": staff.last_name,
            "displayName": staff.display_name,
        }
        if not (lookup["email"] or (lookup["firstName"] and lookup["lastName"]) or lookup["displayName"]):
            return base_id
        try:
            return self.resolve_staff_id(lookup) or base_id
        except ShiftPlanError as exc:
            logger.warning("Could not resolve shift plan staff id for %s: %s", staff.staff_id, exc)
            return base_id

    def get_days(self, staff, window: Interval, timezone: str) -> list[dict[str, Any]]:
        """All plan days across the months the window touches."""
        external_id = self.external_staff_id(staff)
        days: list[dict[str, Any]] = []
        for month_key in month_keys(window, timezone):
            plan = self.get_shift_plan(external_id, month_key)
            days.extend(day for day in plan["days"] if isinstance(day, dict))
        return days


def plan_days_in_window(days: list[dict[str, Any]], window: Interval, timezone: str) -> list[dict[str, Any]]:
    """Keep days with working hours whose local date overlaps the window."""
    tz = resolve_timezone(timezone)
    first = window.start.astimezone(tz).date().isoformat()
    last = window.end.astimezone(tz).date().isoformat()
    kept = []
    for day in days:
        iso_date = day.get("isoDate")
        if not isinstance(iso_date, str) or not day.get("start") or not day.get("end"):
            continue
        if first <= iso_date[:10] <= last:
            kept.append(day)
    return kept
