"""
Unit tests for the H3ReferenceSystem facade.
"""
import pytest
import h3
from unittest.mock import Mock
from src.dggs.engine import GridEngine
from src.dggs.exceptions import InvalidArgumentError, TransformError
from src.dggs.reference_system import H3ReferenceSystem
from src.dggs.reprojection import WGS84, DirectPosition, PyprojReprojector


PARIS = DirectPosition(2.3522, 48.8566)


@pytest.mark.unit
class TestConstruction:
    """Test suite for building a reference system."""

    def test_requires_initialized_engine(self):
        """Test an uninitialized engine is refused."""
        with pytest.raises(InvalidArgumentError):
            H3ReferenceSystem(GridEngine())

    def test_root_zones(self, reference_system):
        """Test the 122 root zones are listed."""
        roots = reference_system.root_zones()

        assert len(roots) == 122
        assert sum(1 for z in roots if z.is_pentagon) == 12


@pytest.mark.unit
class TestEncodeDecode:
    """Test suite for encode, encode_with_precision and decode."""

    def test_encode_matches_h3(self, reference_system):
        """Test encoding a WGS84 position agrees with h3 (x is longitude)."""
        zone = reference_system.encode(PARIS, 9)

        assert zone.id == h3.latlng_to_cell(48.8566, 2.3522, 9)

    def test_encode_bad_level(self, reference_system):
        """Test level 16 raises."""
        with pytest.raises(InvalidArgumentError):
            reference_system.encode(PARIS, 16)

    def test_decode_is_centroid(self, reference_system):
        """Test decode returns the zone centroid with longitude as x."""
        zone = reference_system.encode(PARIS, 9)
        position = reference_system.decode(zone.id)
        lat, lon = h3.cell_to_latlng(zone.id)

        assert position.crs == WGS84
        assert position.x == pytest.approx(lon)
        assert position.y == pytest.approx(lat)

    def test_decode_encode_roundtrip(self, reference_system):
        """Test the centroid of a zone encodes back to the same zone."""
        zone = reference_system.encode(PARIS, 11)

        assert reference_system.encode(reference_system.decode(zone.cell), 11) == zone

    def test_encode_with_precision(self, reference_system):
        """Test the level is picked from the precision table."""
        meters = reference_system.precision_at_level(8) * 1.01
        zone = reference_system.encode_with_precision(PARIS, meters)

        assert zone.resolution == 8

    def test_encode_reprojects_foreign_crs(self, reference_system):
        """Test a Web Mercator position is reprojected before indexing."""
        x, y = 261845.7, 6250564.3  # Paris in EPSG:3857
        zone = reference_system.encode(DirectPosition(x, y, "EPSG:3857"), 7)

        assert zone.id == h3.latlng_to_cell(48.8566, 2.3522, 7)

    def test_encode_uses_injected_reprojector(self, engine):
        """Test positions in another CRS go through the injected reprojector."""
        reprojector = Mock(return_value=DirectPosition(2.3522, 48.8566, WGS84))
        system = H3ReferenceSystem(engine, reprojector=reprojector)

        system.encode(DirectPosition(1.0, 2.0, "EPSG:2154"), 5)

        reprojector.assert_called_once_with(DirectPosition(1.0, 2.0, "EPSG:2154"), "EPSG:2154", WGS84)

    def test_encode_skips_reprojection_in_system_crs(self, engine):
        """Test positions already in WGS84 are not reprojected."""
        reprojector = Mock()
        system = H3ReferenceSystem(engine, reprojector=reprojector)

        system.encode(PARIS, 5)

        reprojector.assert_not_called()

    def test_unknown_crs(self, reference_system):
        """Test an unknown CRS raises TransformError."""
        with pytest.raises(TransformError):
            reference_system.encode(DirectPosition(1.0, 2.0, "EPSG:999999"), 5)


@pytest.mark.unit
class TestGetZone:
    """Test suite for get_zone."""

    def test_from_string_and_int(self, reference_system):
        """Test string and integer ids give the same zone."""
        text = h3.latlng_to_cell(48.8566, 2.3522, 6)

        assert reference_system.get_zone(text) == reference_system.get_zone(h3.str_to_int(text))

    def test_invalid_ids(self, reference_system):
        """Test invalid ids raise."""
        with pytest.raises(InvalidArgumentError):
            reference_system.get_zone("zzz")
        with pytest.raises(InvalidArgumentError):
            reference_system.get_zone(12345)

    def test_level_past_engine_max(self):
        """Test zones finer than the engine's max level are refused."""
        system = H3ReferenceSystem(GridEngine(max_resolution=5).initialize())

        with pytest.raises(InvalidArgumentError):
            system.get_zone(h3.latlng_to_cell(48.8566, 2.3522, 6))


@pytest.mark.unit
class TestQueries:
    """Test suite for search and sub-zone queries."""

    def test_search_returns_zones(self, reference_system):
        """Test search yields zones at the requested level."""
        zones = list(reference_system.search((2.2, 48.8, 2.5, 48.9), 6))

        assert zones
        assert all(z.resolution == 6 for z in zones)
        assert reference_system.encode(PARIS, 6) in zones

    def test_geometric_sub_zones(self, reference_system):
        """Test sub-zones are zones inside the ancestor."""
        zone = reference_system.encode(PARIS, 4)
        sub_zones = list(reference_system.geometric_sub_zones(zone, 1))

        assert zone.center_child() in sub_zones
        assert all(reference_system.zone_has_sub_zone(zone, z) for z in sub_zones)

    def test_zone_precision(self, reference_system):
        """Test a zone's precision is its level's precision."""
        zone = reference_system.encode(PARIS, 7)

        assert reference_system.zone_precision(zone) == reference_system.precision_at_level(7)
        assert zone.precision() == pytest.approx(reference_system.precision_at_level(7))


@pytest.mark.unit
class TestPyprojReprojector:
    """Test suite for the default reprojector."""

    def test_same_crs_is_identity(self):
        """Test no transform is done within one CRS."""
        result = PyprojReprojector()(PARIS, WGS84, WGS84)

        assert (result.x, result.y) == (PARIS.x, PARIS.y)

    def test_mercator_to_wgs84(self):
        """Test a known Web Mercator point converts to lon/lat."""
        result = PyprojReprojector()(DirectPosition(0.0, 0.0, "EPSG:3857"), "EPSG:3857", WGS84)

        assert result.x == pytest.approx(0.0, abs=1e-9)
        assert result.y == pytest.approx(0.0, abs=1e-9)
        assert result.crs == WGS84
