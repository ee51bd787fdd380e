import pandas as pd

from pipelines.identity import (
    assign_identity_keys,
    day_component,
    identity_key,
    normalize_address,
    price_component,
)
from snapshot_schema import LISTINGS, SOLD


def test_normalize_address_drops_punctuation_and_case():
    assert normalize_address("12, Main St.,  Dublin 4") == "12 main st dublin 4"
    assert normalize_address("12 main st dublin 4") == "12 main st dublin 4"
    assert normalize_address(None) == ""
    assert normalize_address("   ") == ""


def test_day_component_truncates_timestamps():
    assert day_component("2024-03-05T10:15:00.000Z") == "2024-03-05"
    assert day_component("2024-03-05") == "2024-03-05"
    assert day_component("05/03/2024") == "2024-03-05"
    assert day_component(None) == ""


def test_price_component_rounds_half_up():
    assert price_component(350000.5) == "350001"
    assert price_component(350000.49) == "350000"
    assert price_component(None) == ""
    assert price_component(float("nan")) == ""


def test_identity_key_matches_formatting_variants():
    first = {"address": "12 Main St, Dublin 4", "soldDate": "2024-03-05", "soldPrice": 350000}
    second = {"address": "12, MAIN ST. Dublin 4", "soldDate": "2024-03-05T00:00:00Z", "soldPrice": 350000.4}
    assert identity_key(first) == "12 main st dublin 4|2024-03-05|350000"
    assert identity_key(first) == identity_key(second)


def test_identity_key_differs_on_price_or_date():
    base = {"address": "12 Main St", "soldDate": "2024-03-05", "soldPrice": 350000}
    assert identity_key(base) != identity_key({**base, "soldPrice": 351000})
    assert identity_key(base) != identity_key({**base, "soldDate": "2024-03-06"})


def test_identity_key_requires_address():
    assert identity_key({"address": None, "soldDate": "2024-03-05", "soldPrice": 1}) is None
    assert identity_key({"address": " ,. ", "soldDate": "2024-03-05", "soldPrice": 1}) is None


def test_identity_key_uses_category_columns():
    record = {"address": "3 Elm Park", "scrapedAt": "2024-02-01T08:00:00Z", "askingPrice": 425000}
    assert identity_key(record, LISTINGS) == "3 elm park|2024-02-01|425000"


def test_assign_identity_keys_flags_unmatched():
    frame = pd.DataFrame(
        [
            {"address": "1 Main Street", "soldDate": "2024-01-01", "soldPrice": 100000.0},
            {"address": None, "soldDate": "2024-01-01", "soldPrice": 100000.0},
        ]
    )
    tagged = assign_identity_keys(frame, SOLD)
    assert tagged["unmatched"].tolist() == [False, True]
    assert tagged.loc[0, "identityKey"] == "1 main street|2024-01-01|100000"
    assert tagged.loc[1, "identityKey"] is None
