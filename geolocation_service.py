import logging
import threading
from math import atan2, cos, radians, sin, sqrt

import requests

from errors import ExternalServiceError, ValidationError


logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0

USER_AGENT = "CareMatchEmergency/1.0"
NOMINATIM_URL = "https://nominatim.openstreetmap.org"

_OVERPASS_ENDPOINTS = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://lz4.overpass-api.de/api/interpreter",
]


def validate_coordinates(latitude, longitude):
    errors = []
    if isinstance(latitude, bool) or not isinstance(latitude, (int, float)) or not -90 <= latitude <= 90:
        errors.append({"field": "latitude", "message": "must be between -90 and 90"})
    if isinstance(longitude, bool) or not isinstance(longitude, (int, float)) or not -180 <= longitude <= 180:
        errors.append({"field": "longitude", "message": "must be between -180 and 180"})
    if errors:
        raise ValidationError(f"Invalid coordinates ({latitude}, {longitude})", errors=errors)


def haversine_distance_m(lat1, lon1, lat2, lon2):
    """Great-circle distance in meters between two latitude/longitude pairs."""
    validate_coordinates(lat1, lon1)
    validate_coordinates(lat2, lon2)

    d_lat = radians(lat2 - lat1)
    d_lon = radians(lon2 - lon1)

    a = (
        sin(d_lat / 2) ** 2
        + cos(radians(lat1)) * cos(radians(lat2)) * sin(d_lon / 2) ** 2
    )
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


class GeocodingProvider:
    def reverse_geocode(self, latitude, longitude):
        raise NotImplementedError

    def forward_geocode(self, address):
        raise NotImplementedError

    def find_nearby(self, latitude, longitude, place_type="hospital", radius=5000):
        raise NotImplementedError


class NominatimGeocodingProvider(GeocodingProvider):
    """OpenStreetMap Nominatim for addresses, Overpass for nearby places."""

    def __init__(self, timeout=5, session=None, base_url=NOMINATIM_URL, overpass_endpoints=None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.base_url = base_url.rstrip("/")
        self.overpass_endpoints = list(overpass_endpoints or _OVERPASS_ENDPOINTS)
        self._cache = {}
        self._cache_lock = threading.Lock()

    def _cached(self, key, loader):
        with self._cache_lock:
            if key in self._cache:
                return self._cache[key]
        value = loader()
        with self._cache_lock:
            self._cache[key] = value
        return value

    def _get_json(self, path, params):
        try:
            response = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ExternalServiceError(f"Geocoding request failed: {exc}", service="nominatim") from exc

    def reverse_geocode(self, latitude, longitude):
        validate_coordinates(latitude, longitude)
        key = ("reverse", round(latitude, 5), round(longitude, 5))
        return self._cached(key, lambda: self._reverse(latitude, longitude))

    def _reverse(self, latitude, longitude):
        payload = self._get_json(
            "/reverse",
            {"lat": latitude, "lon": longitude, "format": "json", "addressdetails": 1},
        )
        if not payload or "display_name" not in payload:
            raise ExternalServiceError("No address found for coordinates", service="nominatim")

        components = payload.get("address", {})
        return {
            "address": payload["display_name"],
            "components": {
                "street": " ".join(
                    part for part in [components.get("house_number"), components.get("road")] if part
                ),
                "city": components.get("city") or components.get("town") or components.get("village"),
                "state": components.get("state"),
                "zipCode": components.get("postcode"),
                "country": components.get("country"),
            },
            "confidence": "medium",
        }

    def forward_geocode(self, address):
        normalized = (address or "").strip()
        if not normalized:
            raise ValidationError("Address is required", errors=[{"field": "address", "message": "required"}])
        return self._cached(("forward", normalized.lower()), lambda: self._forward(normalized))

    def _forward(self, address):
        payload = self._get_json("/search", {"q": address, "format": "json", "limit": 1})
        if not payload:
            raise ExternalServiceError(f"Address not found: {address}", service="nominatim")
        first = payload[0]
        return {
            "latitude": float(first["lat"]),
            "longitude": float(first["lon"]),
            "address": first.get("display_name", address),
        }

    def _run_overpass_query(self, query):
        for endpoint in self.overpass_endpoints:
            try:
                response = self.session.post(
                    endpoint,
                    data=query.encode("utf-8"),
                    headers={"Content-Type": "text/plain; charset=utf-8"},
                    timeout=self.timeout,
                )
                response.raise_for_status()
                payload = response.json()
            except (requests.RequestException, ValueError) as exc:
                logger.warning("Overpass endpoint %s failed: %s", endpoint, exc)
                continue
            if isinstance(payload, dict):
                return payload
        raise ExternalServiceError("All Overpass endpoints failed", service="overpass")

    def find_nearby(self, latitude, longitude, place_type="hospital", radius=5000):
        validate_coordinates(latitude, longitude)
        query = f"""
        [out:json][timeout:20];
        (
          node["amenity"="{place_type}"](around:{int(radius)},{latitude},{longitude});
          way["amenity"="{place_type}"](around:{int(radius)},{latitude},{longitude});
          relation["amenity"="{place_type}"](around:{int(radius)},{latitude},{longitude});
        );
        out center tags;
        """
        payload = self._run_overpass_query(query)

        places = []
        for element in payload.get("elements", []):
            tags = element.get("tags", {})

            lat = element.get("lat")
            lon = element.get("lon")
            if lat is None or lon is None:
                center = element.get("center", {})
                lat = center.get("lat")
                lon = center.get("lon")
            if lat is None or lon is None:
                continue

            address = ", ".join(
                part
                for part in [tags.get("addr:street"), tags.get("addr:city"), tags.get("addr:state")]
                if part
            )
            places.append(
                {
                    "id": element.get("id"),
                    "name": tags.get("name") or f"Nearby {place_type}",
                    "address": address or "Near your location",
                    "latitude": float(lat),
                    "longitude": float(lon),
                    "emergency": tags.get("emergency") == "yes",
                    "distance": round(haversine_distance_m(latitude, longitude, float(lat), float(lon))),
                }
            )

        places.sort(key=lambda place: place["distance"])
        return places


def resolve_address(provider, latitude, longitude, address=""):
    """
    Best-effort address for a location. Geocoding failures degrade to the raw
    coordinates so the emergency flow is never blocked.
    """
    if address:
        return address
    if provider is None:
        return f"{latitude:.5f}, {longitude:.5f}"
    try:
        return provider.reverse_geocode(latitude, longitude)["address"]
    except ExternalServiceError as exc:
        logger.warning("Reverse geocoding failed, using raw coordinates: %s", exc)
        return f"{latitude:.5f}, {longitude:.5f}"
