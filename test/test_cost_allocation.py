from decimal import Decimal

import pytest

from stockcost.domain.costing import CostLine, OverheadCosts, allocate_costs, as_decimal, as_quantity, money
from stockcost.domain.errors import ValidationError

D = Decimal


def test_single_line_local_purchase_absorbs_all_costs():
    result = allocate_costs(
        [CostLine(1, 5, D("10"))],
        OverheadCosts(freight=D("10"), tax=D("5")),
        currency="ARS",
        local_currency="ARS",
    )

    line = result.lines[0]
    assert result.subtotal_local == D("50")
    assert result.total_costs == D("15")
    assert line.distributed_costs == D("15")
    assert line.final_unit_cost == D("13")
    assert line.total_cost == D("65")
    assert result.total == D("65")
    assert result.subtotal_foreign is None


def test_rounding_remainder_goes_to_last_priced_line():
    lines = [CostLine(1, 1, D("1")), CostLine(2, 1, D("1")), CostLine(3, 1, D("1")), CostLine(4, 2, D("0"))]
    result = allocate_costs(lines, OverheadCosts(freight=D("10")), currency="ARS", local_currency="ARS")

    distributed = [ln.distributed_costs for ln in result.lines]
    assert distributed == [D("3.33"), D("3.33"), D("3.34"), D("0")]
    assert result.rounding_adjustment == D("0.01")
    assert result.distributed_total == result.total_costs
    assert result.unallocated == 0


def test_half_cent_shares_are_spread_one_cent_at_a_time():
    lines = [CostLine(i, 1, D("1")) for i in range(1, 11)]
    result = allocate_costs(lines, OverheadCosts(freight=D("0.05")), currency="ARS", local_currency="ARS")

    distributed = [ln.distributed_costs for ln in result.lines]
    assert distributed == [D("0")] * 5 + [D("0.01")] * 5
    assert result.rounding_adjustment == D("0.05")
    assert result.unallocated == 0


@pytest.mark.parametrize(
    "prices, overhead",
    [
        (["1"] * 10, "0.05"),
        (["1"] * 7, "0.03"),
        (["1", "1", "1", "1", "2"], "0.03"),
        (["0.01"] * 9 + ["0", "0.01"], "0.05"),
        (["3", "3", "3", "1"], "0.05"),
        (["0.99", "1.01", "2", "0.50", "0.50", "5"], "0.07"),
    ],
)
def test_every_line_stays_within_a_cent_of_its_exact_share(prices, overhead):
    lines = [CostLine(i, 1, D(p)) for i, p in enumerate(prices, 1)]
    result = allocate_costs(lines, OverheadCosts(freight=D(overhead)), currency="ARS", local_currency="ARS")

    assert result.distributed_total == result.total_costs
    for ln in result.lines:
        assert ln.distributed_costs >= 0
        assert abs(ln.distributed_costs - result.total_costs * ln.proportion) <= D("0.01")
        assert ln.final_unit_cost >= ln.unit_price_local


def test_distribution_is_exact_for_uneven_proportions():
    lines = [CostLine(i, q, D(p)) for i, (q, p) in enumerate([(3, "7.15"), (7, "0.99"), (1, "123.40"), (13, "2.01")], 1)]
    costs = OverheadCosts(freight=D("97.13"), customs=D("12.07"), tax=D("3.3"), insurance=D("0.01"), other=D("1"))
    result = allocate_costs(lines, costs, currency="ARS", local_currency="ARS")

    assert result.total_costs == money(costs.total)
    assert sum(ln.distributed_costs for ln in result.lines) == result.total_costs
    assert abs(sum(ln.proportion for ln in result.lines) - 1) < D("1e-20")
    for ln in result.lines:
        assert ln.final_unit_cost == ln.unit_price_local + ln.distributed_costs / ln.quantity


def test_foreign_purchase_splits_buckets_and_mirrors_costs():
    lines = [
        CostLine(1, 2, D("5000"), D("5")),
        CostLine(2, 1, D("10000"), D("10")),
    ]
    result = allocate_costs(
        lines,
        OverheadCosts(freight=D("10"), tax=D("1000")),
        currency="USD",
        local_currency="ARS",
        exchange_rate=D("1000"),
    )

    assert result.foreign_bucket == D("10")
    assert result.local_bucket == D("1000")
    assert result.foreign_costs_local == D("10000")
    assert result.total_costs == D("11000")
    assert result.subtotal_foreign == D("20")

    first, second = result.lines
    assert first.distributed_costs == D("5500")
    assert first.final_unit_cost == D("7750")
    assert first.distributed_costs_foreign == D("5.5")
    assert first.final_cost_foreign == D("7.75")
    assert second.final_unit_cost == D("15500")
    assert second.final_cost_foreign == D("15.5")


def test_local_purchase_puts_every_cost_in_local_bucket():
    result = allocate_costs(
        [CostLine(1, 1, D("100"))],
        OverheadCosts(freight=D("1"), customs=D("2"), tax=D("3"), insurance=D("4"), other=D("5")),
        currency="ARS",
        local_currency="ARS",
    )
    assert result.foreign_bucket == 0
    assert result.local_bucket == D("15")
    assert result.lines[0].distributed_costs_foreign is None


def test_zero_subtotal_distributes_nothing():
    result = allocate_costs(
        [CostLine(1, 2, D("0")), CostLine(2, 3, D("0"))],
        OverheadCosts(freight=D("10")),
        currency="ARS",
        local_currency="ARS",
    )
    assert [ln.distributed_costs for ln in result.lines] == [D("0"), D("0")]
    assert [ln.proportion for ln in result.lines] == [D("0"), D("0")]
    assert result.unallocated == D("10")


def test_foreign_purchase_requires_positive_rate():
    with pytest.raises(ValidationError) as exc:
        allocate_costs([CostLine(1, 1, D("1"), D("1"))], OverheadCosts(), currency="USD", local_currency="ARS")
    assert exc.value.field == "exchange_rate"


@pytest.mark.parametrize(
    "lines, costs",
    [
        ([], OverheadCosts()),
        ([CostLine(1, 0, D("1"))], OverheadCosts()),
        ([CostLine(1, 1, D("-1"))], OverheadCosts()),
        ([CostLine(1, 1, D("1"))], OverheadCosts(freight=D("-0.01"))),
    ],
)
def test_invalid_inputs_are_rejected(lines, costs):
    with pytest.raises(ValidationError):
        allocate_costs(lines, costs, currency="ARS", local_currency="ARS")


def test_number_coercion():
    assert as_decimal(0.1, "x") == D("0.1")
    assert as_decimal("  12.50 ", "x") == D("12.50")
    assert money(D("2.675")) == D("2.68")
    assert as_quantity("3") == 3
    for bad in (True, None, "abc", float("nan")):
        with pytest.raises(ValidationError):
            as_decimal(bad, "x")
    for bad in (0, -1, 2.5, "x", False):
        with pytest.raises(ValidationError):
            as_quantity(bad)
