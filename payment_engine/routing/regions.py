"""
Jurisdiction-to-provider configuration.

Maps a payer's declared country to a designated payment region whose
local gateway must handle card and online payments. Countries absent
from the table are not designated and use the default (global) routing.

Each region lists the requested methods its rule covers. Cash is never
covered: it settles in person whatever the jurisdiction.

Only regions with a confirmed business rule are listed; unknown or
missing countries never fail, they just fall through to the default.
"""

from typing import Optional, TypedDict

from payment_engine.models.enums import ONLINE_METHODS, PaymentMethod

# Card and online requests are sent to the local gateway by default
REGION_ROUTED_METHODS: frozenset[PaymentMethod] = frozenset(ONLINE_METHODS | {PaymentMethod.DIRECT_CARD})


class RegionConfig(TypedDict, total=False):
    """Routing rule for one designated region."""

    method: PaymentMethod  # Adapter that must handle covered payments there
    label: str  # Human-readable routing label for audit entries
    covers: frozenset[PaymentMethod]  # Requested methods the rule applies to


DESIGNATED_REGIONS: dict[str, RegionConfig] = {
    # ─── Turkey ────────────────────────────────────────────────────────
    # Local card rules require the hosted iyzico page (redirect + poll),
    # for card data captured by the caller as much as for online checkouts.
    "TR": {
        "method": PaymentMethod.REDIRECT_PROVIDER,
        "label": "Turkey (hosted redirect checkout)",
        "covers": REGION_ROUTED_METHODS,
    },
}


# Free-text country names accepted for designated regions
COUNTRY_ALIASES: dict[str, str] = {
    "TURKEY": "TR",
    "TÜRKIYE": "TR",
    "TURKIYE": "TR",
}


def resolve_region(country: Optional[str], regions: Optional[dict[str, RegionConfig]] = None) -> Optional[str]:
    """
    Resolve a declared country to a designated region code.

    Matching is case-insensitive on ISO alpha-2 codes and the aliases
    above. Returns None when the country is missing or not designated.
    """
    table = DESIGNATED_REGIONS if regions is None else regions
    key = (country or "").strip().upper()
    if not key:
        return None
    code = COUNTRY_ALIASES.get(key, key)
    return code if code in table else None


def region_covers(config: RegionConfig, method: PaymentMethod) -> bool:
    """Whether a region's rule applies to a requested method."""
    if method is PaymentMethod.CASH:
        return False
    return method in config.get("covers", REGION_ROUTED_METHODS)
