"""
Provider routing.

Selects the adapter for a payment request based on:
  1. Requested method
  2. Payer's declared country (jurisdiction)

Routing priority:
  - cash → CashAdapter (settles synchronously)
  - card or online method, country in a designated region whose rule
    covers the method → that region's adapter
  - otherwise → the adapter registered for the method (embedded checkout
    is the default global gateway)

Adapters are registered explicitly; adding a provider means registering
one more adapter, not editing this module.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from payment_engine.errors import UnsupportedMethod
from payment_engine.models.enums import PaymentMethod
from payment_engine.providers.base import PaymentContext, ProviderAdapter
from payment_engine.routing.regions import DESIGNATED_REGIONS, RegionConfig, region_covers, resolve_region

logger = logging.getLogger("payment_engine.router")


@dataclass
class ProviderDecision:
    """Result of the provider selection process."""

    adapter: ProviderAdapter
    requested_method: PaymentMethod
    region: Optional[str]  # designated region code, if any
    label: str  # "Cash", "Turkey (hosted redirect checkout)", "Default embedded_form_provider"

    @property
    def method(self) -> PaymentMethod:
        return self.adapter.method


class ProviderRouter:
    def __init__(self, regions: Optional[dict[str, RegionConfig]] = None):
        self._regions = DESIGNATED_REGIONS if regions is None else regions
        self._adapters: dict[PaymentMethod, ProviderAdapter] = {}

    def register(self, method: PaymentMethod, adapter: ProviderAdapter) -> None:
        self._adapters[PaymentMethod(method)] = adapter
        logger.debug("Registered %s adapter for %s", adapter.name, method)

    def adapter_for(self, method: PaymentMethod | str) -> ProviderAdapter:
        """Adapter registered for a method, e.g. the effective method of an existing intent."""
        try:
            return self._adapters[PaymentMethod(method)]
        except (KeyError, ValueError):
            raise UnsupportedMethod(str(method))

    def decide(self, method: PaymentMethod | str, context: Optional[PaymentContext] = None) -> ProviderDecision:
        """
        Pick the adapter for a requested method and payer context.

        Raises:
            UnsupportedMethod: Unknown method, or no adapter registered for it.
        """
        try:
            requested = PaymentMethod(method)
        except ValueError:
            raise UnsupportedMethod(str(method))

        country = context.country if context else None

        region = resolve_region(country, self._regions)
        if region and region_covers(self._regions[region], requested):
            cfg = self._regions[region]
            return ProviderDecision(
                adapter=self.adapter_for(cfg["method"]),
                requested_method=requested,
                region=region,
                label=cfg["label"],
            )

        adapter = self.adapter_for(requested)
        return ProviderDecision(
            adapter=adapter,
            requested_method=requested,
            region=None,
            label="Cash" if requested is PaymentMethod.CASH else f"Default {adapter.method.value}",
        )

    def select(self, method: PaymentMethod | str, context: Optional[PaymentContext] = None) -> ProviderAdapter:
        return self.decide(method, context).adapter
