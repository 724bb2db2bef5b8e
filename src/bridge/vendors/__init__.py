"""CRM vendor layer -- capability interface plus a static registry.

Provides:
- CRMVendor: five-method ABC every CRM implements
- ActivityRecord: call/message payload handed to a vendor
- SyntheticVendor / SyntheticCursorVendor: deterministic fake CRMs
- build_vendor / get_vendor_class: registry lookups
"""

from src.bridge.vendors.base import ActivityRecord, CRMVendor
from src.bridge.vendors.registry import VENDORS, build_vendor, get_vendor_class
from src.bridge.vendors.synthetic import SyntheticCursorVendor, SyntheticVendor

__all__ = [
    "ActivityRecord",
    "CRMVendor",
    "SyntheticCursorVendor",
    "SyntheticVendor",
    "VENDORS",
    "build_vendor",
    "get_vendor_class",
]
