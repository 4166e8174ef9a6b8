"""
Best-effort device type classification.

Vendor rules form an ordered table of (predicate, label) pairs evaluated
first-match-wins. Service identifiers are then checked in advertised order,
each against the known fragments, so the first advertised service that
matches anything decides the label. Classification is pure: it only reads
vendor-data keys and advertised service identifiers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional

from .constants import (
    APPLE_COMPANY_ID,
    DEVICE_TYPE_APPLE,
    DEVICE_TYPE_GENERIC,
    SERVICE_TYPE_FRAGMENTS,
)

if TYPE_CHECKING:
    from .models import DeviceRecord

Predicate = Callable[['DeviceRecord'], bool]


def _has_vendor(company_id: str) -> Predicate:
    def predicate(record: DeviceRecord) -> bool:
        return company_id in record.manufacturer_data
    return predicate


DEVICE_TYPE_RULES: tuple[tuple[Predicate, str], ...] = (
    (_has_vendor(APPLE_COMPANY_ID), DEVICE_TYPE_APPLE),
)


def service_label(service_uuids) -> Optional[str]:
    """Label of the first advertised service matching a known fragment."""
    for uuid in service_uuids:
        uuid = uuid.lower()
        for fragment, label in SERVICE_TYPE_FRAGMENTS:
            if fragment in uuid:
                return label
    return None


def classify_device(record: DeviceRecord) -> str:
    """Return the first matching type label, or the generic fallback."""
    for predicate, label in DEVICE_TYPE_RULES:
        if predicate(record):
            return label
    return service_label(record.service_uuids) or DEVICE_TYPE_GENERIC
