"""Customer consent records with granted/revoked history."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from .extensions import db
from .models import CONSENT_SCOPES, CONSENT_TYPES, Consent
from .timeutil import ensure_utc, to_iso, utc_now

logger = logging.getLogger(__name__)

CONSENT_METHOD_ONLINE = "online"
CONSENT_METHOD_IN_PERSON = "in_person"
CONSENT_METHOD_WRITTEN = "written"

_METHOD_ALIASES = {
    "online": CONSENT_METHOD_ONLINE,
    "web": CONSENT_METHOD_ONLINE,
    "in_person": CONSENT_METHOD_IN_PERSON,
    "in-person": CONSENT_METHOD_IN_PERSON,
    "personal": CONSENT_METHOD_IN_PERSON,
    "phone": CONSENT_METHOD_IN_PERSON,
    "written": CONSENT_METHOD_WRITTEN,
    "paper": CONSENT_METHOD_WRITTEN,
}


def normalize_consent_method(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return _METHOD_ALIASES.get(value.strip().lower())


def is_valid_consent(consent_type: object, scope: object) -> bool:
    return consent_type in CONSENT_TYPES and scope in CONSENT_SCOPES


def _append_history(consent: Consent, action: str, method: Optional[str], source: Optional[str]) -> None:
    metadata = dict(consent.meta or {})
    history = list(metadata.get("history") or [])
    history.append({"action": action, "at": to_iso(utc_now()), "method": method, "source": source})
    metadata["history"] = history
    if method and not normalize_consent_method(metadata.get("method")):
        metadata["method"] = method
    consent.meta = metadata


def find_consent(customer_id: int, location_id: int, consent_type: str, scope: str) -> Optional[Consent]:
    return Consent.query.filter_by(
        customer_id=customer_id,
        location_id=location_id,
        type=consent_type,
        scope=scope,
    ).first()


def record_consent(
    customer_id: int,
    location_id: int,
    consent_type: str,
    scope: str,
    *,
    granted_at: Optional[datetime] = None,
    method: str = CONSENT_METHOD_ONLINE,
    source: str = "WEB",
) -> Consent:
    """Grant a consent, reviving a revoked one. Already-granted consents are left as they are."""
    consent = find_consent(customer_id, location_id, consent_type, scope)
    if consent is not None and consent.granted and consent.revoked_at is None:
        if not normalize_consent_method((consent.meta or {}).get("method")):
            metadata = dict(consent.meta or {})
            metadata["method"] = method
            consent.meta = metadata
        return consent

    when = ensure_utc(granted_at) or utc_now()
    if consent is None:
        consent = Consent(
            customer_id=customer_id,
            location_id=location_id,
            type=consent_type,
            scope=scope,
            meta={},
        )
        db.session.add(consent)
        action = "granted"
    else:
        action = "regranted"

    consent.granted = True
    consent.granted_at = when
    consent.revoked_at = None
    consent.source = source
    _append_history(consent, action, method, source)
    return consent


def revoke_consent(
    customer_id: int,
    location_id: int,
    consent_type: str,
    scope: str,
    *,
    method: Optional[str] = None,
    source: str = "BACKOFFICE",
) -> Optional[Consent]:
    consent = find_consent(customer_id, location_id, consent_type, scope)
    if consent is None or not consent.granted:
        return consent
    consent.granted = False
    consent.revoked_at = utc_now()
    consent.source = source
    _append_history(consent, "revoked", method, source)
    return consent


def implicit_booking_consents(email: Optional[str], phone: Optional[str]) -> list[dict[str, object]]:
    """Contact details left during booking imply transactional messages on that channel."""
    consents: list[dict[str, object]] = []
    if email:
        consents.append({"type": "COMMUNICATION", "scope": "EMAIL"})
    if phone:
        consents.append({"type": "COMMUNICATION", "scope": "SMS"})
    return consents


def capture_online_consents(customer_id: int, location_id: int, inputs: Iterable[dict]) -> list[Consent]:
    """Record every granted consent from an online booking; duplicates collapse per type/scope."""
    seen: dict[tuple[str, str], dict] = {}
    for entry in inputs:
        if entry.get("granted") is False:
            continue
        key = (entry.get("type"), entry.get("scope", "GENERAL"))
        if not is_valid_consent(*key):
            logger.warning("Ignoring unknown consent %s/%s", *key)
            continue
        seen.setdefault(key, entry)

    recorded = []
    for (consent_type, scope), entry in seen.items():
        recorded.append(
            record_consent(
                customer_id,
                location_id,
                consent_type,
                scope,
                granted_at=entry.get("grantedAt") if isinstance(entry.get("grantedAt"), datetime) else None,
                method=CONSENT_METHOD_ONLINE,
                source="WEB",
            )
        )
    return recorded


def consent_history(customer_id: int, location_id: int) -> list[Consent]:
    return (
        Consent.query.filter_by(customer_id=customer_id, location_id=location_id)
        .order_by(Consent.type, Consent.scope)
        .all()
    )
