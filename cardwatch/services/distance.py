"""
CardWatch — Distance Providers

The stores_distance rule needs "how far apart are these two store labels?".
That answer comes from an injected provider:

    StaticDistanceProvider  – in-process lookup table (default, deterministic)
    HttpDistanceProvider    – asks an external distance service over HTTP

Every provider returns kilometres, or ``None`` when the pair cannot be
resolved.  Providers may raise; the rules engine treats a failure exactly
like ``None``.
"""

import logging
from typing import Dict, Mapping, Optional, Protocol

import httpx

from cardwatch.config import settings
from cardwatch.services.errors import DistanceLookupError

logger = logging.getLogger("cardwatch.distance")


class DistanceProvider(Protocol):
    async def get_distance(self, location_a: str, location_b: str) -> Optional[float]:
        ...


# ---------------------------------------------------------------------------
# Known city-to-city distances (km).  Stored one way; lookups are symmetric.
# ---------------------------------------------------------------------------
DEFAULT_DISTANCES_KM: Dict[str, Dict[str, float]] = {
    "london": {"new york": 5567, "paris": 344, "manchester": 330},
    "new york": {"los angeles": 3936},
}


def normalise_location(label: str) -> str:
    """Lower-case and collapse whitespace."""
    return " ".join(label.lower().split())


class StaticDistanceProvider:
    """
    Lookup-table provider.  Identical places are 0 km apart.

    Store labels look like "B&Q London" or "B&Q New York": the chain name
    first, the place last.  Known places (multi-word ones included) are
    matched as a suffix before falling back to the final word.
    """

    def __init__(self, distances: Optional[Mapping[str, Mapping[str, float]]] = None):
        table = distances if distances is not None else DEFAULT_DISTANCES_KM
        self._distances: Dict[str, Dict[str, float]] = {}
        for origin, destinations in table.items():
            for destination, km in destinations.items():
                a, b = origin.lower(), destination.lower()
                self._distances.setdefault(a, {})[b] = float(km)
                self._distances.setdefault(b, {})[a] = float(km)
        # longest first so "new york" wins over "york"
        self._places = sorted(self._distances, key=len, reverse=True)

    def resolve(self, label: str) -> str:
        cleaned = normalise_location(label)
        for place in self._places:
            if cleaned == place or cleaned.endswith(" " + place):
                return place
        return cleaned.rsplit(" ", 1)[-1] if cleaned else cleaned

    async def get_distance(self, location_a: str, location_b: str) -> Optional[float]:
        a = self.resolve(location_a)
        b = self.resolve(location_b)
        if not a or not b:
            return None
        if a == b:
            return 0.0
        return self._distances.get(a, {}).get(b)


class HttpDistanceProvider:
    """
    Client for an external distance service.

    The service is called as ``GET <url>?origin=<a>&destination=<b>`` and is
    expected to answer ``{"distance_km": <number | null>}``.  A 404 means the
    pair is unknown; any other failure raises DistanceLookupError.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.DISTANCE_SERVICE_URL
        self.timeout = timeout if timeout is not None else settings.DISTANCE_LOOKUP_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """One pooled client for every lookup; created on first use."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_distance(self, location_a: str, location_b: str) -> Optional[float]:
        params = {"origin": location_a, "destination": location_b}
        try:
            resp = await self.client.get(self.base_url, params=params)
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise DistanceLookupError(
                f"distance lookup {location_a!r} → {location_b!r} failed: {exc}"
            ) from exc

        distance = payload.get("distance_km") if isinstance(payload, dict) else None
        if distance is None:
            return None
        try:
            return float(distance)
        except (TypeError, ValueError) as exc:
            raise DistanceLookupError(f"unexpected distance payload: {payload!r}") from exc


def get_distance_provider() -> DistanceProvider:
    """Build the provider selected by ``DISTANCE_PROVIDER``."""
    kind = settings.DISTANCE_PROVIDER.lower()
    if kind == "http":
        logger.info("Using HTTP distance provider at %s", settings.DISTANCE_SERVICE_URL)
        return HttpDistanceProvider()
    if kind != "static":
        logger.warning("Unknown DISTANCE_PROVIDER '%s' — falling back to static table.", kind)
    return StaticDistanceProvider()
