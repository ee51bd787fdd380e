import os
import socket

import pytest

from pipelines.snapshot_reader import InMemorySnapshotRepository
from snapshot_schema import LISTINGS, RENTALS, SOLD, ListingRecord, RentalRecord, SoldRecord, to_payload


@pytest.fixture(autouse=True)
def block_network(monkeypatch):
    if os.getenv("LIVE") == "1":
        return

    real_connect = socket.socket.connect

    def guarded_connect(sock, address):
        host = address[0]
        if host not in ("127.0.0.1", "localhost"):
            raise RuntimeError("Network access blocked in tests")
        return real_connect(sock, address)

    monkeypatch.setattr(socket.socket, "connect", guarded_connect)


def sold_payload(address, sold_date="2024-01-15", price=300000, **kwargs):
    return to_payload(SoldRecord(address=address, sold_date=sold_date, sold_price=price, **kwargs))


def listing_payload(address, price=350000, **kwargs):
    return to_payload(ListingRecord(address=address, asking_price=price, **kwargs))


def rental_payload(address, rent=2000, **kwargs):
    return to_payload(RentalRecord(address=address, monthly_rent=rent, **kwargs))


@pytest.fixture
def make_sold():
    return sold_payload


@pytest.fixture
def make_listing():
    return listing_payload


@pytest.fixture
def make_rental():
    return rental_payload


@pytest.fixture
def repo():
    """Repository with one small snapshot per category."""
    snapshots = InMemorySnapshotRepository()
    snapshots.add(
        SOLD,
        "sold-2024-01-31.json",
        [
            sold_payload("1 Main Street, Dublin 4", "2024-01-10", 400000, property_type="Apartment", beds=2,
                         area_sqm=80, asking_price=380000, latitude=53.3300, longitude=-6.2300),
            sold_payload("2 Main Street, Dublin 4", "2024-01-12", 500000, property_type="House", beds=3),
        ],
    )
    snapshots.add(
        LISTINGS,
        "listings-2024-02-01.json",
        [listing_payload("9 Side Road, Dublin 6", 450000, property_type="House", beds=3)],
    )
    snapshots.add(
        RENTALS,
        "rentals-2024-02-01.json",
        [
            rental_payload("5 Main Street, Dublin 4", 2000, property_type="apartment", beds=2,
                           latitude=53.3310, longitude=-6.2300),
        ],
    )
    return snapshots
