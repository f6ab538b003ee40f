from __future__ import annotations
import hashlib
from typing import Any

import shapely
from shapely.errors import GEOSException
from shapely.geometry import MultiPolygon, Polygon, shape
from shapely.geometry.base import BaseGeometry

# ~1 cm at the equator; provider coordinates jitter below this between exports
GRID_SIZE = 1e-7

POLYGONAL_TYPES = ("Polygon", "MultiPolygon")


class GeofenceError(ValueError):
    pass


def _as_geometry_dict(raw: Any) -> dict | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise GeofenceError(f"geofence must be a GeoJSON object, got {type(raw).__name__}")
    # accept a bare geometry or a Feature wrapping one
    if raw.get("type") == "Feature":
        raw = raw.get("geometry")
        if raw is None:
            return None
    if raw.get("type") not in POLYGONAL_TYPES:
        raise GeofenceError(f"unsupported geofence type: {raw.get('type')!r}")
    return raw


def to_shape(raw: Any) -> BaseGeometry | None:
    geo = _as_geometry_dict(raw)
    if geo is None:
        return None
    try:
        geom = shape(geo)
    except (ValueError, TypeError, AttributeError) as e:
        raise GeofenceError(f"malformed geofence: {e}") from e
    if geom.is_empty:
        return None
    return geom


def normalize(raw: Any) -> BaseGeometry | None:
    """
    Canonical form used for structural comparison: snapped to GRID_SIZE,
    single polygons promoted to MultiPolygon, ring orientation and start
    vertex normalized.
    """
    geom = to_shape(raw)
    if geom is None:
        return None
    try:
        geom = shapely.set_precision(geom, GRID_SIZE)
    except GEOSException as e:
        raise GeofenceError(f"invalid geofence: {e}") from e
    if isinstance(geom, Polygon):
        geom = MultiPolygon([geom])
    return shapely.normalize(geom)


def geofence_hash(raw: Any) -> str | None:
    geom = normalize(raw)
    if geom is None:
        return None
    wkt = shapely.to_wkt(geom, rounding_precision=7, trim=True)
    return "sha256:" + hashlib.sha256(wkt.encode("utf-8")).hexdigest()


def same_geofence(a: Any, b: Any) -> bool:
    return geofence_hash(a) == geofence_hash(b)
