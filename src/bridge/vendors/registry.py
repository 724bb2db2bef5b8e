"""Static name -> CRMVendor class registry."""

from __future__ import annotations

from src.bridge.sync.schemas import IntegrationContext
from src.bridge.vendors.base import CRMVendor
from src.bridge.vendors.synthetic import SyntheticCursorVendor, SyntheticVendor

VENDORS: dict[str, type[CRMVendor]] = {
    SyntheticVendor.name: SyntheticVendor,
    SyntheticCursorVendor.name: SyntheticCursorVendor,
}


def get_vendor_class(name: str) -> type[CRMVendor]:
    """Look up a vendor class by registry name.

    Raises:
        KeyError: If no vendor is registered under ``name``.
    """
    try:
        return VENDORS[name]
    except KeyError:
        available = ", ".join(sorted(VENDORS))
        raise KeyError(f"Unknown CRM vendor '{name}' (available: {available})") from None


def build_vendor(integration: IntegrationContext) -> CRMVendor:
    """Instantiate the vendor named by ``integration.vendor``."""
    return get_vendor_class(integration.vendor)(integration)
