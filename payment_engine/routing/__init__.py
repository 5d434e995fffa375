from payment_engine.routing.provider_router import ProviderDecision, ProviderRouter
from payment_engine.routing.regions import DESIGNATED_REGIONS, resolve_region

__all__ = ["DESIGNATED_REGIONS", "resolve_region", "ProviderRouter", "ProviderDecision"]
