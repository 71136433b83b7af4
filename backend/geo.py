import ipaddress
import logging
from collections import Counter
from typing import Any, Callable, Dict, Iterable, Optional

from uvicorn.importer import ImportFromStringError, import_from_string

logger = logging.getLogger(__name__)

HIGH_RISK_COUNTRIES = {"CN", "RU", "KP", "IR", "BY"}
# VPN/proxy exits are common here
MEDIUM_RISK_COUNTRIES = {"VN", "UA", "BD", "PK"}
TOP_N = 10

# ip -> {"country": "US", "city": "Ashburn"} or None
GeoLookup = Callable[[str], Optional[Dict[str, Any]]]


def null_lookup(ip: str) -> Optional[Dict[str, Any]]:
    return None


def load_lookup(target: Optional[str]) -> GeoLookup:
    """
    Resolve a "module:callable" locator, e.g. a wrapper around a GeoIP database
    reader. Unset or unloadable targets fall back to `null_lookup`.
    """
    if not target:
        return null_lookup
    try:
        lookup = import_from_string(target)
    except ImportFromStringError as e:
        logger.error(f"Cannot load geo lookup {target!r}: {e}")
        return null_lookup
    if not callable(lookup):
        logger.error(f"Geo lookup {target!r} is not callable")
        return null_lookup
    logger.info(f"Using geo lookup {target}")
    return lookup


def is_private_ip(ip: str) -> bool:
    """Private, loopback, link-local and unparsable addresses are never looked up."""
    try:
        addr = ipaddress.ip_address(ip.split("%", 1)[0].strip("[]"))
    except ValueError:
        return True
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified


def country_risk(country: Optional[str]) -> str:
    if country in HIGH_RISK_COUNTRIES:
        return "high"
    if country in MEDIUM_RISK_COUNTRIES:
        return "medium"
    return "low"


def geo_stats(connections: Iterable[Any], lookup: GeoLookup = null_lookup) -> Dict[str, Any]:
    """
    Aggregate external connections by country and city. `connections` only needs
    a `remote_ip` attribute, so stored rows and live Connection models both work.
    """
    countries: Counter = Counter()
    cities: Counter = Counter()
    risk_levels = {"high": 0, "medium": 0, "low": 0}
    external = 0
    unresolved = 0

    for conn in connections:
        ip = conn.remote_ip
        if is_private_ip(ip):
            continue
        external += 1

        try:
            geo = lookup(ip)
        except Exception as e:
            logger.warning(f"Geo lookup failed for {ip}: {e}")
            geo = None
        if not geo or not geo.get("country"):
            unresolved += 1
            continue

        country = geo["country"]
        countries[country] += 1
        cities[f"{geo.get('city') or 'Unknown'}, {country}"] += 1
        risk_levels[country_risk(country)] += 1

    return {
        "countries": dict(countries),
        "cities": dict(cities),
        "top_countries": [
            {"country": c, "count": n, "risk": country_risk(c)} for c, n in countries.most_common(TOP_N)
        ],
        "top_cities": [{"city": c, "count": n} for c, n in cities.most_common(TOP_N)],
        "risk_levels": risk_levels,
        "external_connections": external,
        "unresolved": unresolved,
    }
