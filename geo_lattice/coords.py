import numpy as np
import pyproj

from scipy.spatial import ConvexHull
from scipy.spatial.distance import pdist

from geo_lattice.exceptions import CoordsError
from typing import Tuple, Dict


def validate_coords(coords: np.ndarray) -> np.ndarray:
    """
    Check site coordinates and return them as a float array.

    :param coords: Site coordinates of shape (n_obs, 2) or (n_obs, 3)
    :return: Float copy of the coordinates
    :raises CoordsError: If the shape is wrong or values are not finite
    """
    coords = np.array(coords, dtype=float)

    if coords.ndim != 2 or coords.shape[1] not in (2, 3):
        raise CoordsError(f"Expected coords shape (n_obs, 2) or (n_obs, 3), got {coords.shape}")

    if len(coords) < 1:
        raise CoordsError("At least one site coordinate is required")

    if np.any(~np.isfinite(coords)):
        raise CoordsError("Coordinates contain NaN or infinite values")

    return coords


def is_geographic(coords: np.ndarray) -> bool:
    """
    Detect if coordinates are in lon/lat format using value range.

    :param coords: Coordinate array of shape (n_obs, 2)
    :return: True if coordinates appear to be geographic (lon/lat)
    """
    if coords.shape[1] != 2:
        return False
    x_vals, y_vals = coords[:, 0], coords[:, 1]
    lon_range = np.all((-180 <= x_vals) & (x_vals <= 180))
    lat_range = np.all((-90 <= y_vals) & (y_vals <= 90))
    return bool(lon_range and lat_range)


def hull_diameter_km(coords: np.ndarray) -> float:
    """
    Approximate the largest extent of lon/lat sites in kilometres.

    :param coords: Geographic coordinates (lon/lat)
    :return: Diameter of the convex hull in km (latitude-corrected)
    """
    if len(coords) < 2:
        return 0.0
    try:
        hull_points = coords[ConvexHull(coords).vertices]
    except Exception:
        # collinear or too few points for a hull
        hull_points = coords
    diameter_deg = np.max(pdist(hull_points))

    center_lat = np.mean(coords[:, 1])
    km_per_deg = (110.54 + 111.32 * np.cos(np.radians(center_lat))) / 2
    return float(diameter_deg * km_per_deg)


def create_projection_string(coords: np.ndarray) -> str:
    """
    Choose a Proj4 projection for lon/lat sites based on their extent.

    UTM for regions under 1000 km, Albers equal-area conic up to 11000 km,
    Mollweide beyond that.

    :param coords: Geographic coordinates (lon/lat)
    :return: Proj4 projection string
    """
    diameter = hull_diameter_km(coords)
    lon_center = np.mean(coords[:, 0])
    lat_center = np.mean(coords[:, 1])

    if diameter < 1000:
        zone = int(np.floor((lon_center + 180) / 6) + 1)
        zone = max(1, min(60, zone))
        south = " +south" if lat_center < 0 else ""
        return f"+proj=utm +zone={zone}{south} +datum=WGS84 +units=m +no_defs"

    if diameter < 11000:
        lat_min, lat_max = coords[:, 1].min(), coords[:, 1].max()
        lat_span = lat_max - lat_min
        return (f"+proj=aea +lat_1={lat_min + lat_span / 6:.2f} +lat_2={lat_max - lat_span / 6:.2f} "
                f"+lat_0={lat_center:.2f} +lon_0={lon_center:.2f} "
                f"+datum=WGS84 +units=m +no_defs")

    return f"+proj=moll +lon_0={lon_center:.2f} +datum=WGS84 +units=m +no_defs"


def project_coordinates(coords: np.ndarray, proj4_string: str) -> np.ndarray:
    """
    Project geographic coordinates using specified projection.

    :param coords: Geographic coordinates (lon/lat)
    :param proj4_string: Proj4 projection string
    :return: Projected coordinates
    """
    transformer = pyproj.Transformer.from_crs("EPSG:4326", proj4_string, always_xy=True)
    x_proj, y_proj = transformer.transform(coords[:, 0], coords[:, 1])
    return np.column_stack([x_proj, y_proj])


def preprocess_coords(coords: np.ndarray,
                      project: bool = False,
                      verbose: bool = True) -> Tuple[np.ndarray, Dict]:
    """
    Validate site coordinates and optionally project lon/lat input.

    Lattice spacing is isotropic, so lon/lat sites spread over a wide
    latitude band should be projected before the knot grids are laid out.

    :param coords: Site coordinates, shape (n_obs, 2) or (n_obs, 3)
    :param project: If True and coordinates look like lon/lat, project them
    :param verbose: Print what was done
    :return: Tuple of (working_coords, projection_info dict)
    :raises CoordsError: If input validation fails
    """
    coords = validate_coords(coords)

    proj4_string = None
    system = "User-provided coordinates"
    coordinate_units = 'unknown'

    if project and is_geographic(coords):
        proj4_string = create_projection_string(coords)
        coords = project_coordinates(coords, proj4_string)
        system = proj4_string.split()[0].replace("+proj=", "")
        coordinate_units = 'meters'
        if verbose:
            print(f"Projected geographic coordinates ({system})")

        extent = np.max(coords.max(axis=0) - coords.min(axis=0))
        if extent > 100000:
            coords = coords * 0.001
            coordinate_units = 'kilometers'
            if verbose:
                print(f"Rescaled coordinates from meters to km (extent: {extent / 1000:.1f} km)")
    elif project and verbose:
        print("Coordinates do not look geographic - using as-is")

    projection_info = {
        'proj4_string': proj4_string,
        'system': system,
        'bbox': (coords.min(axis=0), coords.max(axis=0)),
        'coordinate_units': coordinate_units,
    }

    return coords, projection_info
