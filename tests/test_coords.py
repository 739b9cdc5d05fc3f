"""
Unit tests for geo_lattice.coords module.
"""

import pytest
import numpy as np

from geo_lattice.coords import (
    validate_coords,
    is_geographic,
    hull_diameter_km,
    create_projection_string,
    project_coordinates,
    preprocess_coords,
)
from geo_lattice.exceptions import CoordsError


class TestValidateCoords:
    """Test input checks on site coordinates."""

    def test_valid_2d_and_3d(self):
        coords = validate_coords([[0, 1], [2, 3]])
        assert coords.dtype == np.float64
        assert validate_coords(np.zeros((4, 3))).shape == (4, 3)

    @pytest.mark.parametrize("coords, match", [
        (np.zeros(5), "shape"),
        (np.zeros((5, 4)), "shape"),
        (np.zeros((0, 2)), "At least one"),
        (np.array([[0.0, np.inf]]), "NaN or infinite"),
    ])
    def test_invalid(self, coords, match):
        with pytest.raises(CoordsError, match=match):
            validate_coords(coords)


class TestProjection:
    """Test lon/lat detection and projection."""

    def setup_method(self):
        # Sites around San Francisco Bay
        rng = np.random.default_rng(0)
        self.lonlat = np.column_stack([
            rng.uniform(-122.6, -122.2, 30),
            rng.uniform(37.5, 37.9, 30),
        ])

    def test_is_geographic(self):
        assert is_geographic(self.lonlat)
        assert not is_geographic(self.lonlat * 10)
        assert not is_geographic(np.zeros((3, 3)))

    def test_hull_diameter(self):
        """Half a degree square near 37N is roughly 50 km across."""
        diameter = hull_diameter_km(self.lonlat)
        assert 30 < diameter < 80

    def test_utm_for_small_region(self):
        proj = create_projection_string(self.lonlat)
        assert "+proj=utm" in proj
        assert "+zone=10" in proj
        assert "+south" not in proj

    def test_albers_for_continental_region(self):
        coords = np.array([[-120.0, 30.0], [-80.0, 45.0], [-100.0, 35.0]])
        assert create_projection_string(coords).startswith("+proj=aea")

    def test_mollweide_for_global_extent(self):
        coords = np.array([[-170.0, -60.0], [170.0, 60.0], [0.0, 0.0]])
        assert create_projection_string(coords).startswith("+proj=moll")

    def test_project_coordinates(self):
        """Projected coordinates are in metres and preserve distances roughly."""
        proj = create_projection_string(self.lonlat)
        xy = project_coordinates(self.lonlat, proj)

        assert xy.shape == self.lonlat.shape
        extent = xy.max(axis=0) - xy.min(axis=0)
        assert np.all(extent > 20000) and np.all(extent < 60000)


class TestPreprocessCoords:
    """Test the coordinate pipeline."""

    def test_no_projection(self):
        coords = np.random.default_rng(1).uniform(size=(10, 2))
        out, info = preprocess_coords(coords, verbose=False)

        np.testing.assert_array_equal(out, coords)
        assert info['proj4_string'] is None
        np.testing.assert_array_equal(info['bbox'][0], coords.min(axis=0))

    def test_projection_small_region(self):
        lonlat = np.array([[-122.5, 37.6], [-122.3, 37.8], [-122.4, 37.7]])
        out, info = preprocess_coords(lonlat, project=True, verbose=False)

        assert info['coordinate_units'] == 'meters'
        assert info['system'] == 'utm'
        assert np.max(out.max(axis=0) - out.min(axis=0)) > 1000

    def test_projection_rescales_large_extent(self):
        """Extents above 100 km are rescaled to kilometres."""
        lonlat = np.array([[-124.0, 34.0], [-118.0, 38.0], [-120.0, 36.0]])
        out, info = preprocess_coords(lonlat, project=True, verbose=False)

        assert info['coordinate_units'] == 'kilometers'
        assert 100 < np.max(out.max(axis=0) - out.min(axis=0)) < 2000

    def test_non_geographic_left_alone(self, capsys):
        coords = np.array([[1000.0, 2000.0], [3000.0, 4000.0]])
        out, info = preprocess_coords(coords, project=True, verbose=True)

        np.testing.assert_array_equal(out, coords)
        assert info['proj4_string'] is None
        assert "as-is" in capsys.readouterr().out
