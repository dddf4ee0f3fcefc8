"""
Zonal Indexer: spatial join between footprints and zones.

Three join methods are supported:

    - centroid:  A footprint belongs to the zone containing its centroid.
                 At most one zone per footprint. If zones overlap, the first
                 matching zone in zone order wins (an implementation-defined
                 tie-break, not a guarantee).
    - intersect: A footprint belongs to every zone it intersects, even
                 partially. The whole footprint is associated to each zone.
    - clip:      As ``intersect``, but each association carries the part of
                 the footprint inside the zone. Small slivers are kept.

Overlapping zones are allowed under ``intersect`` and ``clip`` and produce one
association per zone; gridded and focal workflows rely on this.
"""

from typing import Optional

import numpy as np
import pandas as pd
import geopandas as gpd
import shapely

from .errors import ConfigurationError, EmptyZoneSetError
from .geometry import check_crs
from .io import VectorSource, read_vector
from .config import ZONE_METHODS


DEFAULT_ZONE_FIELD = 'zoneID'

# Private column holding each zone's position, used for the centroid tie-break
_ZONE_ORDER = '_zone_order'


def prepare_zones(
    zones: VectorSource,
    zone_field: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Load zones and attach their identifiers.

    Args:
        zones: Zone polygons (path, GeoDataFrame, GeoSeries or geometry list).
        zone_field: Column of ``zones`` holding identifiers. Its values are
                    used as-is. When omitted, a ``zoneID`` column of sequential
                    integers is created.

    Returns:
        gpd.GeoDataFrame: Columns ``[<id column>, geometry]`` in zone order.

    Raises:
        EmptyZoneSetError: If there are no zones.
        ConfigurationError: If ``zone_field`` is not a column of ``zones``.
    """
    gdf = read_vector(zones)
    if len(gdf) == 0:
        raise EmptyZoneSetError()

    if zone_field is None:
        ids = pd.Series(np.arange(len(gdf)), name=DEFAULT_ZONE_FIELD)
        id_col = DEFAULT_ZONE_FIELD
    else:
        if zone_field not in gdf.columns:
            raise ConfigurationError(f"Zone field '{zone_field}' not found in zones")
        ids = gdf[zone_field].reset_index(drop=True)
        id_col = zone_field

    return gpd.GeoDataFrame(
        {id_col: ids.to_numpy()},
        geometry=gdf.geometry.to_numpy(),
        crs=gdf.crs,
    )


def zone_id_column(zones: gpd.GeoDataFrame) -> str:
    """Name of the identifier column of a prepared zone frame."""
    return [c for c in zones.columns if c != zones.geometry.name][0]


def index_zones(
    footprints: gpd.GeoDataFrame,
    zones: VectorSource,
    zone_field: Optional[str] = None,
    method: str = 'centroid',
) -> gpd.GeoDataFrame:
    """
    Associate footprints with zones.

    The footprint identifier ``fid`` is taken from the index of
    ``footprints``, so a pre-filtered subset keeps its original identifiers.
    Footprints that fall in no zone are dropped.

    Args:
        footprints: Footprint polygons.
        zones: Zone polygons, or an already prepared zone frame.
        zone_field: Identifier column in ``zones`` (default: generated
                    ``zoneID``).
        method: 'centroid', 'intersect' or 'clip'.

    Returns:
        gpd.GeoDataFrame: Columns ``fid``, the zone id column and ``geometry``
        (the clipped part under ``clip``, the whole footprint otherwise),
        sorted by ``fid`` then zone order.

    Raises:
        ConfigurationError: For an unknown method or missing zone field.
        EmptyZoneSetError: If there are no zones.
        CRSMismatchError: If footprints and zones use different CRSs.

    Example:
        >>> assoc = index_zones(buildings, districts, zone_field='name',
        ...                     method='intersect')
        >>> assoc.groupby('name').size()
    """
    method = str(method).lower()
    if method not in ZONE_METHODS:
        raise ConfigurationError(
            f"Invalid zone method '{method}'. Use one of {ZONE_METHODS}."
        )

    zone_gdf = prepare_zones(zones, zone_field)
    id_col = zone_id_column(zone_gdf)

    if isinstance(footprints, gpd.GeoSeries):
        footprints = gpd.GeoDataFrame(geometry=footprints)
    check_crs(footprints.crs, zone_gdf.crs)

    zone_gdf = zone_gdf.copy()
    zone_gdf[_ZONE_ORDER] = np.arange(len(zone_gdf))
    if zone_gdf.crs is None and footprints.crs is not None:
        zone_gdf = zone_gdf.set_crs(footprints.crs)

    left = gpd.GeoDataFrame(
        {'fid': footprints.index.to_numpy()},
        geometry=footprints.geometry.to_numpy(),
        crs=footprints.crs if footprints.crs is not None else zone_gdf.crs,
    )
    empty = gpd.GeoDataFrame(
        {'fid': pd.Series([], dtype=left['fid'].dtype),
         id_col: pd.Series([], dtype=zone_gdf[id_col].dtype)},
        geometry=gpd.GeoSeries([], crs=left.crs),
    )
    if len(left) == 0:
        return empty

    if method == 'centroid':
        points = left.copy()
        points['_footprint'] = left.geometry.to_numpy()
        points = points.set_geometry(left.geometry.centroid)
        joined = gpd.sjoin(points, zone_gdf, how='inner', predicate='intersects')
        joined = joined.sort_values(['fid', _ZONE_ORDER], kind='stable')
        joined = joined.drop_duplicates('fid', keep='first')
        geometry = joined['_footprint'].to_numpy()
    else:
        joined = gpd.sjoin(left, zone_gdf, how='inner', predicate='intersects')
        joined = joined.sort_values(['fid', _ZONE_ORDER], kind='stable')
        geometry = joined.geometry.to_numpy()
        if method == 'clip':
            zone_geoms = zone_gdf.geometry.to_numpy()[joined[_ZONE_ORDER].to_numpy()]
            geometry = shapely.intersection(geometry, zone_geoms)

    if len(joined) == 0:
        return empty

    result = gpd.GeoDataFrame(
        {'fid': joined['fid'].to_numpy(), id_col: joined[id_col].to_numpy()},
        geometry=gpd.GeoSeries(geometry, crs=left.crs),
        crs=left.crs,
    )
    if method == 'clip':
        # Footprints that only touch a zone boundary leave no area inside it
        pieces = result.geometry.to_numpy()
        result = result[~shapely.is_empty(pieces) & (shapely.area(pieces) > 0)]
    return result.reset_index(drop=True)
