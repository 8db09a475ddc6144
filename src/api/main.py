"""
Zone Index API
FastAPI application exposing the H3 discrete global grid and a persistent R*-tree index.
"""
from fastapi import FastAPI, Response, HTTPException
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from shapely.geometry import Polygon
from dotenv import load_dotenv
from typing import Optional
import logging
import os
import threading
import time

from src.api import metrics
from src.api.models import SearchRequest, ElementRequest
from src.dggs.engine import GridEngine
from src.dggs.exceptions import DggsError, TransformError
from src.dggs.reference_system import H3ReferenceSystem
from src.dggs.reprojection import WGS84, DirectPosition
from src.dggs.zone import Zone
from src.index.envelope import Envelope
from src.index.exceptions import StoreIndexError
from src.index.mappers import IndexedElement
from src.index.store import open_index
from src.index.wrapper import RefreshingTreeWrapper

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
INDEX_STORAGE_PATH = os.getenv("INDEX_STORAGE_PATH", "./data/index")

# Upper bound on zones listed by one hierarchy query
MAX_LISTED_ZONES = 10000

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# One grid engine per process, shared by every request
grid_engine = GridEngine().initialize()
reference_system = H3ReferenceSystem(grid_engine)

_index: Optional[RefreshingTreeWrapper] = None
_index_lock = threading.Lock()


def get_index() -> RefreshingTreeWrapper:
    """
    Get or create the shared spatial index.

    Returns:
        RefreshingTreeWrapper over the index stored at INDEX_STORAGE_PATH

    Raises:
        StoreIndexError: If the index cannot be opened
    """
    global _index
    with _index_lock:
        if _index is None:
            _index = RefreshingTreeWrapper(lambda: open_index(INDEX_STORAGE_PATH))
        return _index


def to_http_error(error: Exception, endpoint: str) -> HTTPException:
    """
    Map a domain error to an HTTP error and count it.

    Invalid arguments are the caller's fault (400), failed reprojection is
    unprocessable input (422), and storage failures are a service problem (503).
    """
    if isinstance(error, TransformError):
        status_code = 422
    elif isinstance(error, DggsError):
        status_code = 400
    else:
        status_code = 503
        logger.error(f"{endpoint}: {error}")
    metrics.zone_requests_total.labels(endpoint=endpoint, status=str(status_code)).inc()
    return HTTPException(status_code=status_code, detail=str(error))


def zone_summary(zone: Zone) -> dict:
    lat, lon = zone.centroid()
    return {
        "zone_id": zone.id,
        "level": zone.resolution,
        "lat": lat,
        "lon": lon,
    }


def zone_detail(zone: Zone) -> dict:
    lat, lon = zone.centroid()
    return {
        "zone_id": zone.id,
        "level": zone.resolution,
        "base_cell": zone.base_cell,
        "is_pentagon": zone.is_pentagon,
        "centroid": {"lat": lat, "lon": lon},
        "boundary": [[v_lat, v_lon] for v_lat, v_lon in zone.boundary()],
        "area_m2": zone.area(),
        "precision_m": reference_system.zone_precision(zone),
    }


def element_view(element_id: int, element: Optional[IndexedElement]) -> dict:
    view = {"element_id": element_id}
    if element is not None:
        view.update({
            "identifier": element.identifier,
            "nbenv": element.nbenv,
            "envelope": list(element.envelope.as_tuple()),
        })
    return view


# Initialize FastAPI application
app = FastAPI(
    title="Zone Index",
    description="Hexagonal discrete global grid queries and a persistent R*-tree spatial index",
    version="1.0.0"
)


@app.get("/metrics")
def get_metrics():
    """
    Prometheus metrics endpoint.

    Returns:
        Response: Prometheus-formatted metrics
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
        dict: API status, grid state and index availability
    """
    try:
        index_size = len(get_index().tree)
        index_status = "available"
        metrics.index_operations_total.labels(operation="health", status="success").inc()
    except StoreIndexError:
        index_size = None
        index_status = "unavailable"
        metrics.index_operations_total.labels(operation="health", status="error").inc()

    return {
        "status": "healthy",
        "grid": "initialized" if grid_engine.is_initialized else "uninitialized",
        "max_level": reference_system.max_level,
        "index": index_status,
        "index_size": index_size,
    }


# =============================================================================
# Zones
# =============================================================================

@app.get("/v1/zones/encode")
def encode_zone(
    lat: float,
    lon: float,
    level: Optional[int] = None,
    precision: Optional[float] = None,
    crs: str = WGS84
):
    """
    Find the zone containing a position.

    Either `level` or `precision` (meters) picks the resolution; with a
    precision the coarsest level finer than it is used. For a CRS other than
    WGS84, `lon` and `lat` are the x and y of that CRS.

    Args:
        lat: Latitude (or y)
        lon: Longitude (or x)
        level: Target resolution 0-15
        precision: Target precision in meters
        crs: CRS of the position, default EPSG:4326

    Returns:
        dict: Zone id, level and centroid

    Raises:
        HTTPException 400: Missing or invalid level/precision
        HTTPException 422: Position cannot be reprojected
    """
    start_time = time.time()
    if (level is None) == (precision is None):
        metrics.zone_requests_total.labels(endpoint="encode", status="400").inc()
        raise HTTPException(status_code=400, detail="Provide exactly one of level or precision")

    position = DirectPosition(lon, lat, crs)
    try:
        if level is not None:
            zone = reference_system.encode(position, level)
        else:
            zone = reference_system.encode_with_precision(position, precision)
    except DggsError as e:
        raise to_http_error(e, "encode") from e

    metrics.zone_requests_total.labels(endpoint="encode", status="success").inc()
    metrics.request_duration_seconds.labels(endpoint="encode").observe(time.time() - start_time)
    return zone_summary(zone)


@app.get("/v1/zones/{zone_id}")
def get_zone(zone_id: str):
    """
    Describe a zone: hierarchy position, geometry and precision.

    Args:
        zone_id: Hexadecimal zone identifier

    Returns:
        dict: Zone details
    """
    try:
        zone = reference_system.get_zone(zone_id)
    except DggsError as e:
        raise to_http_error(e, "zone") from e

    metrics.zone_requests_total.labels(endpoint="zone", status="success").inc()
    return zone_detail(zone)


@app.get("/v1/zones/{zone_id}/parent")
def get_zone_parent(zone_id: str, level: Optional[int] = None):
    """
    Ancestor of a zone.

    Args:
        zone_id: Hexadecimal zone identifier
        level: Ancestor level (default: one level up)

    Returns:
        dict: Parent zone summary
    """
    try:
        parent = reference_system.get_zone(zone_id).parent(level)
    except DggsError as e:
        raise to_http_error(e, "parent") from e

    metrics.zone_requests_total.labels(endpoint="parent", status="success").inc()
    return zone_summary(parent)


@app.get("/v1/zones/{zone_id}/children")
def get_zone_children(zone_id: str):
    """
    Direct children of a zone (6 for pentagons, 7 otherwise).

    Returns:
        dict: Zone id and sorted children summaries
    """
    try:
        zone = reference_system.get_zone(zone_id)
    except DggsError as e:
        raise to_http_error(e, "children") from e

    children = sorted(zone.children(), key=lambda z: z.cell)
    metrics.zone_requests_total.labels(endpoint="children", status="success").inc()
    return {
        "zone_id": zone.id,
        "children": [zone_summary(c) for c in children],
    }


@app.get("/v1/zones/{zone_id}/neighbors")
def get_zone_neighbors(zone_id: str, k: int = 1):
    """
    Zones at exactly grid distance k.

    Args:
        zone_id: Hexadecimal zone identifier
        k: Ring distance (0 = the zone itself)

    Returns:
        dict: Ring zones sorted by id
    """
    start_time = time.time()
    try:
        ring = reference_system.get_zone(zone_id).ring(k)
    except DggsError as e:
        raise to_http_error(e, "neighbors") from e

    zones = sorted(ring, key=lambda z: z.cell)
    metrics.zone_requests_total.labels(endpoint="neighbors", status="success").inc()
    metrics.request_duration_seconds.labels(endpoint="neighbors").observe(time.time() - start_time)
    return {
        "zone_id": zone_id,
        "k": k,
        "total_zones": len(zones),
        "zones": [zone_summary(z) for z in zones],
    }


@app.get("/v1/zones/{zone_id}/subzones")
def get_sub_zones(zone_id: str, depth: int = 1, limit: int = MAX_LISTED_ZONES):
    """
    Zones `depth` levels down that lie geometrically inside the zone.

    Unlike children, this includes descendants of neighboring cells whose
    footprint falls within the zone, and may leave out own descendants
    sticking out of it.

    Args:
        zone_id: Hexadecimal zone identifier
        depth: Relative depth (0 = the zone itself)
        limit: Max zones returned

    Returns:
        dict: Sub-zones and whether the list was truncated
    """
    start_time = time.time()
    try:
        zone = reference_system.get_zone(zone_id)
        sub_zones = reference_system.geometric_sub_zones(zone, depth)
    except DggsError as e:
        raise to_http_error(e, "subzones") from e

    zones = []
    truncated = False
    for sub_zone in sub_zones:
        if len(zones) >= limit:
            truncated = True
            break
        zones.append(zone_summary(sub_zone))

    metrics.zone_requests_total.labels(endpoint="subzones", status="success").inc()
    metrics.zones_returned_total.labels(endpoint="subzones").inc(len(zones))
    metrics.request_duration_seconds.labels(endpoint="subzones").observe(time.time() - start_time)
    return {
        "zone_id": zone.id,
        "depth": depth,
        "total_zones": len(zones),
        "truncated": truncated,
        "zones": zones,
    }


@app.post("/v1/zones/search")
def search_zones(request: SearchRequest):
    """
    Zones at a level intersecting a bounding box or polygon.

    Without any extent, only level 0 is allowed and all 122 root zones are returned.

    Args:
        request: SearchRequest with bbox or polygon and target level

    Returns:
        dict: Matching zones and whether the list was truncated

    Raises:
        HTTPException 400: If the extent is missing above level 0 or malformed
    """
    start_time = time.time()
    if request.polygon is None and request.bbox is None and request.level > 0:
        metrics.zone_requests_total.labels(endpoint="search", status="400").inc()
        raise HTTPException(status_code=400, detail="A bbox or polygon is required above level 0")

    if request.polygon is not None:
        try:
            extent = Polygon([tuple(point) for point in request.polygon])
        except ValueError as e:
            metrics.zone_requests_total.labels(endpoint="search", status="400").inc()
            raise HTTPException(status_code=400, detail=f"Invalid polygon: {e}") from e
    else:
        extent = request.bbox

    zones = []
    truncated = False
    try:
        for zone in reference_system.search(extent, request.level):
            if len(zones) >= request.limit:
                truncated = True
                break
            zones.append(zone_summary(zone))
    except DggsError as e:
        raise to_http_error(e, "search") from e

    metrics.zone_requests_total.labels(endpoint="search", status="success").inc()
    metrics.zones_returned_total.labels(endpoint="search").inc(len(zones))
    metrics.request_duration_seconds.labels(endpoint="search").observe(time.time() - start_time)
    return {
        "level": request.level,
        "total_zones": len(zones),
        "truncated": truncated,
        "zones": zones,
    }


@app.get("/v1/precision")
def get_precision(level: Optional[int] = None, meters: Optional[float] = None):
    """
    Convert between resolution and linear precision.

    Args:
        level: Resolution to get the precision of
        meters: Precision to get the level of

    Returns:
        dict: Level and its precision in meters
    """
    if (level is None) == (meters is None):
        metrics.zone_requests_total.labels(endpoint="precision", status="400").inc()
        raise HTTPException(status_code=400, detail="Provide exactly one of level or meters")

    try:
        if level is None:
            level = reference_system.level_for_precision(meters)
        precision = reference_system.precision_at_level(level)
    except DggsError as e:
        raise to_http_error(e, "precision") from e

    metrics.zone_requests_total.labels(endpoint="precision", status="success").inc()
    return {"level": level, "precision_m": precision}


# =============================================================================
# Spatial index
# =============================================================================

@app.post("/v1/index/elements")
def insert_element(request: ElementRequest):
    """
    Insert or replace an element in the spatial index.

    An identifier already in the index keeps its element id and gets the new envelope.

    Args:
        request: ElementRequest with identifier and envelope

    Returns:
        dict: Stored element and its tree id

    Raises:
        HTTPException 400: If a coordinate is NaN
        HTTPException 503: If the index store fails
    """
    start_time = time.time()
    try:
        envelope = Envelope(request.minx, request.miny, request.maxx, request.maxy)
    except ValueError as e:
        metrics.index_operations_total.labels(operation="insert", status="invalid").inc()
        raise HTTPException(status_code=400, detail=str(e)) from e
    element = IndexedElement(identifier=request.identifier, envelope=envelope, nbenv=request.nbenv)
    try:
        element_id = get_index().insert(element)
    except StoreIndexError as e:
        metrics.index_operations_total.labels(operation="insert", status="error").inc()
        raise to_http_error(e, "insert") from e

    metrics.index_operations_total.labels(operation="insert", status="success").inc()
    metrics.request_duration_seconds.labels(endpoint="insert").observe(time.time() - start_time)
    return {"message": "Element indexed", **element_view(element_id, element)}


@app.delete("/v1/index/elements/{identifier}")
def delete_element(identifier: str):
    """
    Remove an element from the spatial index.

    Raises:
        HTTPException 404: If the identifier is not indexed
        HTTPException 503: If the index store fails
    """
    # Removal is by identifier; the stored envelope is looked up by the tree
    probe = IndexedElement(identifier=identifier, envelope=Envelope.of_point(0.0, 0.0))
    try:
        removed = get_index().remove(probe)
    except StoreIndexError as e:
        metrics.index_operations_total.labels(operation="remove", status="error").inc()
        raise to_http_error(e, "remove") from e

    if not removed:
        metrics.index_operations_total.labels(operation="remove", status="not_found").inc()
        raise HTTPException(status_code=404, detail=f"Element {identifier!r} is not indexed")

    metrics.index_operations_total.labels(operation="remove", status="success").inc()
    return {"message": "Element removed", "identifier": identifier}


@app.get("/v1/index/search")
def search_index(minx: float, miny: float, maxx: float, maxy: float):
    """
    Elements whose envelope intersects the query box.

    Returns:
        dict: Matching elements
    """
    start_time = time.time()
    try:
        envelope = Envelope(minx, miny, maxx, maxy)
    except ValueError as e:
        metrics.index_operations_total.labels(operation="search", status="invalid").inc()
        raise HTTPException(status_code=400, detail=str(e)) from e

    try:
        index = get_index()
        elements = [
            element_view(element_id, index.get_element(element_id))
            for element_id in index.search_id(envelope)
        ]
    except StoreIndexError as e:
        metrics.index_operations_total.labels(operation="search", status="error").inc()
        raise to_http_error(e, "index_search") from e

    elements.sort(key=lambda e: e["element_id"])
    metrics.index_operations_total.labels(operation="search", status="success").inc()
    metrics.request_duration_seconds.labels(endpoint="index_search").observe(time.time() - start_time)
    return {
        "envelope": [minx, miny, maxx, maxy],
        "total_elements": len(elements),
        "elements": elements,
    }


@app.get("/v1/index/nearest")
def nearest_elements(x: float, y: float, k: int = 1):
    """
    The k elements nearest to a point, nearest first.

    Returns:
        dict: Elements ordered by distance
    """
    if k < 1:
        metrics.index_operations_total.labels(operation="nearest", status="invalid").inc()
        raise HTTPException(status_code=400, detail=f"k must be positive, got: {k}")

    try:
        index = get_index()
        elements = [element_view(i, index.get_element(i)) for i in index.nearest(x, y, k)]
    except StoreIndexError as e:
        metrics.index_operations_total.labels(operation="nearest", status="error").inc()
        raise to_http_error(e, "nearest") from e

    metrics.index_operations_total.labels(operation="nearest", status="success").inc()
    return {"x": x, "y": y, "k": k, "elements": elements}
