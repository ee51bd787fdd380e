import math

import pandas as pd
import pytest

from pipelines.geo import DUBLIN_BOUNDS, Bounds, LatitudeBandIndex, count_geocoded, haversine_m, validate_coordinates


def test_haversine_one_millidegree_of_latitude():
    assert haversine_m(53.33, -6.26, 53.331, -6.26) == pytest.approx(111.2, abs=0.5)
    assert haversine_m(53.33, -6.26, 53.33, -6.26) == 0


def test_bounds_parse_and_contains():
    bounds = Bounds.parse("53.1, 53.65, -6.6, -5.95")
    assert bounds == DUBLIN_BOUNDS
    assert bounds.contains(53.35, -6.26)
    assert not bounds.contains(51.9, -8.47)


@pytest.mark.parametrize("text", ["1,2,3", "a,b,c,d", "54,53,-6,-5"])
def test_bounds_parse_rejects_bad_input(text):
    with pytest.raises(ValueError):
        Bounds.parse(text)


def test_band_index_finds_points_across_band_edges():
    index = LatitudeBandIndex(200)
    index.add("house", 53.3300, -6.26, "near")
    index.add("house", 53.3317, -6.26, "edge")
    index.add("house", 53.3400, -6.26, "far")
    index.add("flat", 53.3300, -6.26, "other group")
    found = sorted(item for _, item in index.within("house", 53.3300, -6.26))
    assert found == ["edge", "near"]


def test_band_index_rejects_non_positive_radius():
    with pytest.raises(ValueError):
        LatitudeBandIndex(0)


def test_validate_coordinates_nulls_rejected_points():
    frame = pd.DataFrame(
        {
            "address": ["inside", "outside", "half", "none"],
            "latitude": [53.35, 40.71, 53.35, None],
            "longitude": [-6.26, -74.0, None, None],
        }
    )
    result = validate_coordinates(frame, DUBLIN_BOUNDS)
    assert result.loc[0, "latitude"] == 53.35
    assert math.isnan(result.loc[1, "latitude"])
    assert math.isnan(result.loc[2, "latitude"])
    assert result["geocodeStatus"].tolist() == [None, "out_of_bounds", "incomplete", None]
    assert count_geocoded(result) == 1


def test_validate_coordinates_without_bounds_keeps_far_points():
    frame = pd.DataFrame({"latitude": [40.71], "longitude": [-74.0]})
    result = validate_coordinates(frame, None)
    assert result.loc[0, "latitude"] == 40.71
    assert result.loc[0, "geocodeStatus"] is None


def test_validate_coordinates_keeps_existing_status():
    frame = pd.DataFrame({"latitude": [53.35], "longitude": [-6.26], "geocodeStatus": ["success"]})
    assert validate_coordinates(frame, DUBLIN_BOUNDS).loc[0, "geocodeStatus"] == "success"
