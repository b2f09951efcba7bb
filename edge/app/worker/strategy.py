"""Which source serves a fetch: the network, the cache, or neither."""

from enum import Enum

from edge.app.worker.models import FetchRequest, is_same_origin


class FetchStrategy(str, Enum):
    PASS_THROUGH = "pass_through"    # Worker declines; browser fetches normally
    NETWORK_FIRST = "network_first"  # Live page, offline page on failure
    CACHE_FIRST = "cache_first"      # Cached asset, network on a miss


def select_strategy(request: FetchRequest, origin: str) -> FetchStrategy:
    """Pick the serving policy for request.

    Only same-origin GETs are intercepted. Full-page loads go to the
    network first so visitors see fresh content whenever they are online.
    """
    if request.method.upper() != "GET" or not is_same_origin(request.url, origin):
        return FetchStrategy.PASS_THROUGH
    if request.is_navigation:
        return FetchStrategy.NETWORK_FIRST
    return FetchStrategy.CACHE_FIRST
