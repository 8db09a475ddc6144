"""
Unit tests for Pydantic models.
"""
import pytest
from pydantic import ValidationError
from src.api.models import SearchRequest, ElementRequest


@pytest.mark.unit
class TestSearchRequestModel:
    """Test suite for SearchRequest model."""

    def test_bbox_request(self):
        """Test creating a bbox search."""
        request = SearchRequest(bbox=[2.25, 48.81, 2.42, 48.90], level=6)

        assert request.bbox == [2.25, 48.81, 2.42, 48.90]
        assert request.polygon is None
        assert request.limit == 1000

    def test_polygon_request(self):
        """Test creating a polygon search."""
        request = SearchRequest(polygon=[[0, 0], [1, 0], [1, 1]], level=3)

        assert len(request.polygon) == 3

    def test_no_extent_allowed(self):
        """Test an extent is optional (global search)."""
        assert SearchRequest(level=0).bbox is None

    def test_bbox_needs_four_values(self):
        """Test bbox length is validated."""
        with pytest.raises(ValidationError):
            SearchRequest(bbox=[1, 2, 3], level=6)

    def test_level_range(self):
        """Test level must be in 0-15."""
        with pytest.raises(ValidationError):
            SearchRequest(bbox=[0, 0, 1, 1], level=16)
        with pytest.raises(ValidationError):
            SearchRequest(bbox=[0, 0, 1, 1], level=-1)

    def test_level_required(self):
        """Test level is required."""
        with pytest.raises(ValidationError):
            SearchRequest(bbox=[0, 0, 1, 1])

    def test_bbox_and_polygon_exclusive(self):
        """Test bbox and polygon cannot both be given."""
        with pytest.raises(ValidationError):
            SearchRequest(bbox=[0, 0, 1, 1], polygon=[[0, 0], [1, 0], [1, 1]], level=3)

    def test_polygon_points_are_pairs(self):
        """Test polygon points must have two coordinates."""
        with pytest.raises(ValidationError):
            SearchRequest(polygon=[[0, 0], [1, 0, 5], [1, 1]], level=3)

    def test_polygon_needs_three_points(self):
        """Test a polygon needs at least three points."""
        with pytest.raises(ValidationError):
            SearchRequest(polygon=[[0, 0], [1, 1]], level=3)


@pytest.mark.unit
class TestElementRequestModel:
    """Test suite for ElementRequest model."""

    def test_valid_element(self):
        """Test creating an element with defaults."""
        element = ElementRequest(identifier="bridge-1", minx=0, miny=0, maxx=1, maxy=1)

        assert element.identifier == "bridge-1"
        assert element.nbenv == 1

    def test_point_element(self):
        """Test a degenerate (point) envelope is allowed."""
        element = ElementRequest(identifier="p", minx=1, miny=1, maxx=1, maxy=1)

        assert element.minx == element.maxx

    def test_empty_identifier(self):
        """Test identifier cannot be empty."""
        with pytest.raises(ValidationError):
            ElementRequest(identifier="", minx=0, miny=0, maxx=1, maxy=1)

    def test_inverted_envelope(self):
        """Test min greater than max is rejected."""
        with pytest.raises(ValidationError):
            ElementRequest(identifier="bad", minx=0, miny=5, maxx=1, maxy=1)

    def test_nbenv_positive(self):
        """Test the envelope count must be at least 1."""
        with pytest.raises(ValidationError):
            ElementRequest(identifier="x", minx=0, miny=0, maxx=1, maxy=1, nbenv=0)
