"""DERP map loading and merging."""

from __future__ import annotations

import json
import logging
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

HTTP_READ_TIMEOUT = 30.0


def _lower_keys(data: Optional[Mapping[Any, Any]]) -> dict:
    if not data:
        return {}
    return {str(key).lower(): value for key, value in data.items()}


def _int(value: Any) -> int:
    return int(value) if value is not None else 0


def _str(value: Any) -> str:
    return str(value) if value is not None else ""


@dataclass
class DERPNode:
    name: str = ""
    region_id: int = 0
    host_name: str = ""
    cert_name: str = ""
    ipv4: str = ""
    ipv6: str = ""
    stun_port: int = 0
    stun_only: bool = False
    derp_port: int = 0

    @classmethod
    def _from_dict(cls, data: Mapping[Any, Any]) -> "DERPNode":
        values = _lower_keys(data)
        return cls(
            name=_str(values.get("name")),
            region_id=_int(values.get("regionid")),
            host_name=_str(values.get("hostname")),
            cert_name=_str(values.get("certname")),
            ipv4=_str(values.get("ipv4")),
            ipv6=_str(values.get("ipv6")),
            stun_port=_int(values.get("stunport")),
            stun_only=bool(values.get("stunonly", False)),
            derp_port=_int(values.get("derpport")),
        )


@dataclass
class DERPRegion:
    region_id: int = 0
    region_code: str = ""
    region_name: str = ""
    avoid: bool = False
    nodes: list[DERPNode] = field(default_factory=list)

    @classmethod
    def _from_dict(cls, data: Mapping[Any, Any]) -> "DERPRegion":
        values = _lower_keys(data)
        return cls(
            region_id=_int(values.get("regionid")),
            region_code=_str(values.get("regioncode")),
            region_name=_str(values.get("regionname")),
            avoid=bool(values.get("avoid", False)),
            nodes=[DERPNode._from_dict(node) for node in values.get("nodes") or []],
        )


@dataclass
class DERPMap:
    regions: dict[int, DERPRegion] = field(default_factory=dict)
    omit_default_regions: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Mapping[Any, Any]]) -> "DERPMap":
        """Build a map from decoded JSON or YAML; field names match case-insensitively."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError("DERP map document must be a mapping")
        values = _lower_keys(data)
        regions = {
            int(region_id): DERPRegion._from_dict(region or {})
            for region_id, region in (values.get("regions") or {}).items()
        }
        return cls(
            regions=regions,
            omit_default_regions=bool(values.get("omitdefaultregions", False)),
        )


def load_derp_map_from_path(path) -> DERPMap:
    """Load a DERP map from a YAML (or JSON) file."""
    with open(path, encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    return DERPMap.from_dict(data)


def load_derp_map_from_url(url: str, timeout: float = HTTP_READ_TIMEOUT) -> DERPMap:
    """Fetch a DERP map as JSON over HTTP."""
    request = urllib.request.Request(url, method="GET")
    with urllib.request.urlopen(request, timeout=timeout) as response:
        body = response.read()
    return DERPMap.from_dict(json.loads(body))


def merge_derp_maps(derp_maps: Iterable[DERPMap]) -> DERPMap:
    """Merge regions of several maps; a region in a later map replaces an earlier one."""
    result = DERPMap(regions={}, omit_default_regions=False)
    for derp_map in derp_maps:
        result.regions.update(derp_map.regions)
    return result


def get_derp_map(paths: Iterable = (), urls: Iterable[str] = ()) -> DERPMap:
    """Load and merge the configured DERP maps, stopping a source list at its first failure."""
    derp_maps: list[DERPMap] = []

    for path in paths:
        logger.debug("Loading DERPMap from path %s", path)
        try:
            derp_maps.append(load_derp_map_from_path(path))
        except (OSError, ValueError, yaml.YAMLError) as err:
            logger.error("Could not load DERP map from path %s: %s", path, err)
            break

    for url in urls:
        logger.debug("Loading DERPMap from url %s", url)
        try:
            derp_maps.append(load_derp_map_from_url(url))
        except (OSError, ValueError) as err:
            logger.error("Could not load DERP map from url %s: %s", url, err)
            break

    derp_map = merge_derp_maps(derp_maps)
    if not derp_map.regions:
        logger.warning(
            "DERP map is empty, not a single DERP map datasource was loaded "
            "correctly or contained a region"
        )
    return derp_map