import math

import pandas as pd
import pytest

from pipelines.derived_fields import (
    RentalMatcher,
    compute_derived_fields,
    estimated_yield,
    over_under_asking,
    price_per_area,
    yield_coverage,
)
from snapshot_schema import LISTINGS, RENTALS, SOLD, records_to_frame

LAT = 53.3300
LNG = -6.2600
# Roughly 111 m of latitude.
STEP = 0.001


def test_price_per_area_guards_denominator():
    result = price_per_area(pd.Series([300000.0, 300000.0, 300000.0, None]), pd.Series([100.0, 0.0, None, 50.0]))
    assert result[0] == 3000.0
    assert result[1:].isna().all()


def test_over_under_asking():
    result = over_under_asking(pd.Series([330000.0, 290000.0, 1.0]), pd.Series([300000.0, 300000.0, 0.0]))
    assert result[0] == 10.0
    assert result[1] == pytest.approx(-3.3)
    assert math.isnan(result[2])


def test_estimated_yield():
    assert estimated_yield(2000, 400000) == 6.0
    assert estimated_yield(2000, 0) is None


def test_yield_coverage_rounds():
    assert yield_coverage(1, 3) == 33
    assert yield_coverage(2, 3) == 67
    assert yield_coverage(0, 0) == 0


def rentals(*records):
    return records_to_frame(list(records), RENTALS)


def test_matcher_prefers_exact_address(make_rental):
    matcher = RentalMatcher(
        rentals(
            make_rental("Apt 3, The Maltings, Dublin 8", 1800, property_type="Apartment", beds=2),
            make_rental("Apt 3 The Maltings Dublin 8", 2500, property_type="apartment", beds=2),
        )
    )
    found = matcher.match("apt 3, the maltings, dublin 8", "APARTMENT", 2)
    assert found.method == "address"
    assert found.monthly_rent == 1800
    assert found.distance_m is None


def test_matcher_nearby_requires_same_beds_and_type(make_rental):
    matcher = RentalMatcher(
        rentals(make_rental("1 Canal View", 2100, property_type="apartment", beds=2, latitude=LAT + STEP, longitude=LNG))
    )
    found = matcher.match("9 Other Street", "apartment", 2, LAT, LNG)
    assert found.method == "nearby"
    assert found.monthly_rent == 2100
    assert found.distance_m == pytest.approx(111.2, abs=0.5)

    assert matcher.match("9 Other Street", "apartment", 4, LAT, LNG) is None
    assert matcher.match("9 Other Street", "house", 2, LAT, LNG) is None
    assert matcher.match("9 Other Street", None, 2, LAT, LNG) is None
    assert matcher.match("9 Other Street", "apartment", 2, None, None) is None


def test_matcher_respects_radius(make_rental):
    matcher = RentalMatcher(
        rentals(make_rental("far", 2100, property_type="house", beds=3, latitude=LAT + 3 * STEP, longitude=LNG)),
        radius_m=200,
    )
    assert matcher.match("x", "house", 3, LAT, LNG) is None
    wide = RentalMatcher(
        rentals(make_rental("far", 2100, property_type="house", beds=3, latitude=LAT + 3 * STEP, longitude=LNG)),
        radius_m=400,
    )
    assert wide.match("x", "house", 3, LAT, LNG).monthly_rent == 2100


def test_matcher_breaks_distance_ties_by_address_similarity(make_rental):
    matcher = RentalMatcher(
        rentals(
            make_rental("Unit 4 Quarry Road Dublin 7", 1500, property_type="house", beds=3, latitude=LAT - STEP, longitude=LNG),
            make_rental("12 Baggot Street Dublin 2", 2600, property_type="house", beds=3, latitude=LAT + STEP, longitude=LNG),
        )
    )
    found = matcher.match("10 Baggot Street, Dublin 2", "house", 3, LAT, LNG)
    assert found.monthly_rent == 2600


def test_matcher_nearest_wins(make_rental):
    matcher = RentalMatcher(
        rentals(
            make_rental("a", 1500, property_type="house", beds=3, latitude=LAT + STEP, longitude=LNG),
            make_rental("b", 2600, property_type="house", beds=3, latitude=LAT + STEP / 2, longitude=LNG),
        )
    )
    assert matcher.match("c", "house", 3, LAT, LNG).monthly_rent == 2600


def test_matcher_ignores_unusable_rentals(make_rental):
    matcher = RentalMatcher(
        rentals(
            make_rental("no rent", None, property_type="house", beds=3),
            make_rental("no type", 1000, beds=3),
            make_rental("no beds", 1000, property_type="house"),
            make_rental("ok", 1000, property_type="house", beds=3),
        )
    )
    assert matcher.indexed == 1


def test_compute_derived_fields_for_sold(make_sold, make_rental):
    matcher = RentalMatcher(
        rentals(make_rental("r", 2000, property_type="apartment", beds=2, latitude=LAT + STEP, longitude=LNG))
    )
    sold = records_to_frame(
        [
            make_sold("1 Dock St", price=400000, asking_price=380000, area_sqm=80, property_type="Apartment", beds=2,
                      latitude=LAT, longitude=LNG),
            make_sold("2 Dock St", price=400000, area_sqm=0, property_type="Apartment", beds=4,
                      latitude=LAT, longitude=LNG),
        ],
        SOLD,
    )
    result, matched = compute_derived_fields(sold, SOLD, matcher)
    assert matched == 1
    first, second = result.iloc[0], result.iloc[1]
    assert first["pricePerAreaUnit"] == 5000.0
    assert first["overUnderAskingPercent"] == 5.3
    assert first["estimatedYield"] == 6.0
    assert first["yieldMatchMethod"] == "nearby"
    assert first["yieldMonthlyRent"] == 2000
    assert pd.isna(second["pricePerAreaUnit"])
    assert pd.isna(second["overUnderAskingPercent"])
    assert pd.isna(second["estimatedYield"])
    assert second["yieldMatchMethod"] is None


def test_compute_derived_fields_for_listings_and_rentals(make_listing, make_rental):
    listings = records_to_frame([make_listing("1 Elm", 300000, area_sqm=60)], LISTINGS)
    result, matched = compute_derived_fields(listings, LISTINGS)
    assert matched == 0
    assert result.loc[0, "pricePerAreaUnit"] == 5000.0
    assert "overUnderAskingPercent" not in result.columns

    rental_frame = rentals(make_rental("1 Elm", 2000, area_sqm=50))
    result, matched = compute_derived_fields(rental_frame, RENTALS)
    assert result.loc[0, "rentPerSqm"] == 40.0
    assert "pricePerAreaUnit" not in result.columns
    assert "estimatedYield" not in result.columns
