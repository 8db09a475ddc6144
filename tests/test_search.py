"""
Unit tests for region search (zones intersecting an extent).
"""
import pytest
import h3
from shapely.geometry import Polygon
from src.dggs import cell_id
from src.dggs.exceptions import InvalidArgumentError
from src.dggs.search import cell_search_box, search_zones, to_query_geometry


MANHATTAN = (-74.02, 40.70, -73.93, 40.80)


def centroid_cells(bbox, res):
    """Cells whose centroid lies in the box, per h3."""
    min_lon, min_lat, max_lon, max_lat = bbox
    poly = h3.LatLngPoly([
        (min_lat, min_lon), (min_lat, max_lon), (max_lat, max_lon), (max_lat, min_lon)
    ])
    return {h3.str_to_int(c) for c in h3.polygon_to_cells(poly, res)}


@pytest.mark.unit
class TestToQueryGeometry:
    """Test suite for extent normalization."""

    def test_bbox_becomes_box(self):
        """Test a 4-tuple becomes a rectangle."""
        geometry = to_query_geometry(MANHATTAN)

        assert geometry.bounds == pytest.approx(MANHATTAN)

    def test_inverted_bbox_rejected(self):
        """Test min greater than max raises."""
        with pytest.raises(InvalidArgumentError):
            to_query_geometry((10.0, 0.0, 5.0, 1.0))

    def test_latitude_out_of_range_rejected(self):
        """Test latitudes past the poles raise."""
        with pytest.raises(InvalidArgumentError):
            to_query_geometry((0.0, 0.0, 1.0, 91.0))

    def test_wrong_length_rejected(self):
        """Test a 3-tuple raises."""
        with pytest.raises(InvalidArgumentError):
            to_query_geometry((0.0, 0.0, 1.0))

    def test_invalid_polygon_rejected(self):
        """Test a self-intersecting polygon raises."""
        bowtie = Polygon([(0, 0), (1, 1), (1, 0), (0, 1)])
        with pytest.raises(InvalidArgumentError):
            to_query_geometry(bowtie)


@pytest.mark.unit
class TestSearchZones:
    """Test suite for search_zones."""

    def test_no_extent_level_zero_gives_roots(self, engine):
        """Test a global query at level 0 returns the 122 root cells."""
        assert sorted(search_zones(engine, None, 0)) == sorted(engine.root_cells)

    def test_no_extent_level_one(self, engine):
        """Test a global query at level 1 returns every level 1 cell."""
        result = list(search_zones(engine, None, 1))

        assert len(result) == 122 * 7 - 12
        assert len(set(result)) == len(result)

    def test_covers_centroid_cells(self, engine):
        """Test every cell whose centroid is in the box is found."""
        result = set(search_zones(engine, MANHATTAN, 7))

        assert centroid_cells(MANHATTAN, 7) <= result
        assert all(cell_id.resolution(c) == 7 for c in result)

    def test_contains_cell_of_box_center(self, engine):
        """Test the cell under the middle of the box is found."""
        center = engine.latlng_to_cell(40.75, -73.975, 8)

        assert center in set(search_zones(engine, MANHATTAN, 8))

    def test_results_stay_near_box(self, engine):
        """Test results are not scattered far outside the box."""
        for cell in search_zones(engine, MANHATTAN, 7):
            lat, lon = engine.cell_to_latlng(cell)
            assert 40.6 < lat < 40.9
            assert -74.1 < lon < -73.85

    def test_polygon_extent(self, engine):
        """Test a polygon works like a box of the same shape."""
        min_lon, min_lat, max_lon, max_lat = MANHATTAN
        polygon = Polygon([
            (min_lon, min_lat), (max_lon, min_lat), (max_lon, max_lat), (min_lon, max_lat)
        ])

        assert set(search_zones(engine, polygon, 6)) == set(search_zones(engine, MANHATTAN, 6))

    def test_antimeridian(self, engine):
        """Test cells straddling the antimeridian are found."""
        target = engine.latlng_to_cell(0.0, 179.95, 3)

        assert target in set(search_zones(engine, (179.5, -0.5, 180.0, 0.5), 3))

    def test_pole(self, engine):
        """Test the cell covering the north pole is found."""
        target = engine.latlng_to_cell(89.99, 0.0, 2)

        assert target in set(search_zones(engine, (-10.0, 89.5, 10.0, 90.0), 2))

    def test_bad_level_rejected(self, engine):
        """Test level 16 raises."""
        with pytest.raises(InvalidArgumentError):
            search_zones(engine, MANHATTAN, 16)


@pytest.mark.unit
class TestCellSearchBox:
    """Test suite for the pruning box."""

    def test_box_contains_vertices(self, engine):
        """Test the box covers every boundary vertex."""
        cell = engine.latlng_to_cell(40.75, -73.975, 5)
        min_lon, min_lat, max_lon, max_lat = cell_search_box(engine, cell)

        for lat, lon in engine.cell_to_boundary(cell):
            assert min_lat <= lat <= max_lat
            assert min_lon <= lon <= max_lon

    def test_polar_cell_box_is_full_width(self, engine):
        """Test a cell containing the pole gets a full-longitude box."""
        cell = engine.latlng_to_cell(90.0, 0.0, 1)
        min_lon, _, max_lon, max_lat = cell_search_box(engine, cell)

        assert (min_lon, max_lon, max_lat) == (-180.0, 180.0, 90.0)
