from decimal import Decimal

from booking_service.pricing import booking_total, charge_amount, dietary_tags, event_type, to_minor_units

TAGS = [
    {"id": 1, "name": "Wedding", "pid": 5},
    {"id": 10, "name": "Vegan", "pid": 2, "quantity": 2, "priceModifier": 3},
    {"id": 11, "name": "Halal", "pid": 2, "quantity": 1, "priceModifier": "1.50"},
    {"id": 40, "name": "Outdoor", "pid": 7},
]


def test_event_type_is_first_pid_5_tag():
    assert event_type(TAGS) == {"id": 1, "name": "Wedding", "pid": 5}


def test_event_type_empty_when_missing():
    assert event_type([t for t in TAGS if t["pid"] != 5]) == {}


def test_dietary_tags_only_pid_2():
    assert [t["id"] for t in dietary_tags(TAGS)] == [10, 11]


def test_total_adds_dietary_modifiers():
    # 10 * 10 + 2 * 3 + 1 * 1.50
    assert booking_total(10, Decimal("10.00"), TAGS) == Decimal("107.50")


def test_total_without_tags():
    assert booking_total(25, Decimal("12.40"), []) == Decimal("310.00")


def test_missing_modifier_or_quantity_counts_as_zero():
    tags = [{"id": 10, "pid": 2, "quantity": 4}, {"id": 11, "pid": 2, "priceModifier": 2}]
    assert booking_total(1, Decimal("5"), tags) == Decimal("5")


def test_non_dietary_modifiers_are_ignored():
    tags = [{"id": 1, "pid": 5, "quantity": 3, "priceModifier": 100}]
    assert booking_total(2, Decimal("10"), tags) == Decimal("20")


def test_charge_amount_adds_service_fee_percentage():
    assert charge_amount(Decimal("106"), Decimal("10")) == Decimal("116.60")


def test_charge_amount_rounds_half_up_to_cents():
    assert charge_amount(Decimal("10.05"), Decimal("5")) == Decimal("10.55")


def test_charge_amount_without_fee():
    assert charge_amount(Decimal("99.99"), Decimal("0")) == Decimal("99.99")


def test_to_minor_units():
    assert to_minor_units(Decimal("116.60")) == 11660
    assert to_minor_units(Decimal("0.015")) == 2
