from datetime import time
from decimal import Decimal

import pytest
from slotbroker.domain.errors import NotFoundError, UnverifiedProviderError
from slotbroker.domain.services import (
    OfferingSnapshot,
    compute_total_price,
    covers,
    from_minor_units,
    to_minor_units,
    validate_offering,
)


def _snapshot(*, active: bool = True, verified: bool = True) -> OfferingSnapshot:
    return OfferingSnapshot(
        offering_id=1,
        provider_id=2,
        is_active=active,
        provider_verified=verified,
        base_price=Decimal("80.00"),
    )


def test_validate_offering_missing() -> None:
    with pytest.raises(NotFoundError):
        validate_offering(None)


def test_validate_offering_inactive() -> None:
    with pytest.raises(NotFoundError):
        validate_offering(_snapshot(active=False))


def test_validate_offering_unverified_provider() -> None:
    with pytest.raises(UnverifiedProviderError):
        validate_offering(_snapshot(verified=False))


def test_inactive_is_reported_before_unverified() -> None:
    with pytest.raises(NotFoundError):
        validate_offering(_snapshot(active=False, verified=False))


def test_covers_is_containment() -> None:
    assert covers(time(9), time(17), time(10), time(12))
    assert covers(time(10), time(12), time(10), time(12))
    assert not covers(time(10), time(12), time(11), time(13))


def test_total_price_rounds_half_up() -> None:
    assert compute_total_price(Decimal("99.99"), Decimal("1.50")) == Decimal("149.99")
    assert compute_total_price(Decimal("10.01"), Decimal("1.25")) == Decimal("12.51")
    assert compute_total_price(Decimal("50"), None) == Decimal("50.00")


def test_minor_units_conversion() -> None:
    assert to_minor_units(Decimal("149.99")) == 14999
    assert to_minor_units(Decimal("0.005")) == 1
    assert from_minor_units(14999) == Decimal("149.99")
