import csv
import io

import pytest

from app.core.config import EfficiencyIssue
from app.services.report_service import (
    ProtocolAggregates, ReportPrices, ReportValidationError, RowKind, build_report, build_rows,
    extract_efficiency_issues, flatten_results, fmt_number, tvl_cost_pct,
)

WEEK = ("2025-01-01", "2025-01-07")
PRICES = ReportPrices(mon_price=0.2, adjustment_factor=1.0)

# column positions
TYPE, PROTOCOL, FUNDING, POOL, MON, ADJ_MON, DAYS, TVL, VOLUME, APR, COST, ADJ_COST, WOW, VOL_EFF, ACTION, NOTES = range(16)


def pool(protocol="morpho", funding="morpho", market="USDC Vault", mon=100.0, tvl=100000.0, volume=50000.0, apr=None):
    return {
        "platformProtocol": protocol,
        "fundingProtocol": funding,
        "marketName": market,
        "totalMON": mon,
        "tvl": tvl,
        "volumeValue": volume,
        "apr": apr,
    }


def rows_of(content):
    return list(csv.reader(io.StringIO(content)))


def render(pools, prices=PRICES, aggregates=None, **kwargs):
    return rows_of(build_report(pools, WEEK, prices, aggregates or ProtocolAggregates(), **kwargs))


def test_morpho_pool_metrics():
    rows = render([pool()])
    pool_row = rows[3]

    assert pool_row[TYPE] == "Pool"
    assert pool_row[PROTOCOL] == "morpho"
    assert pool_row[MON] == "100.00"
    assert pool_row[DAYS] == "7"
    assert pool_row[COST] == "1.04"
    assert pool_row[ADJ_COST] == "1.04"
    assert pool_row[VOL_EFF] == "0.04"
    assert tvl_cost_pct(20.0, 7, 100000.0) == pytest.approx(1.0428571, rel=1e-6)


def test_layout_and_header():
    rows = render([pool(), pool(protocol="kuru", funding="merkl", market="MON-USDC")])

    assert rows[0][TVL] == "TVL (as of 01/07)"
    assert rows[0][VOLUME] == "Volume (01/01 - 01/07)"
    assert [r[TYPE] for r in rows[1:]] == [
        "GRAND TOTAL",
        "morpho SUBTOTAL", "Pool", "morpho PROTOCOL TOTAL",
        "kuru SUBTOTAL", "Pool", "kuru PROTOCOL TOTAL",
    ]
    assert rows[1][POOL] == "All Pools"
    assert rows[2][POOL] == "ALL POOLS"
    assert all(len(r) == 16 for r in rows)


def test_zero_tvl_and_volume_leave_percentages_empty():
    pool_row = render([pool(tvl=0.0, volume=0.0)])[3]

    assert pool_row[TVL] == "0.00"
    assert pool_row[VOLUME] == "0.00"
    assert pool_row[COST] == ""
    assert pool_row[VOL_EFF] == ""


def test_missing_figures_render_empty():
    pool_row = render([pool(tvl=None, volume=None)])[3]

    assert pool_row[TVL] == ""
    assert pool_row[VOLUME] == ""
    assert pool_row[APR] == ""


def test_subtotal_recomputes_from_sums_not_averages():
    rows = render([pool(market="A", tvl=100000.0), pool(market="B", tvl=300000.0)])
    subtotal = rows[2]

    assert subtotal[MON] == "200.00"
    assert subtotal[TVL] == "400000.00"
    # 40 USD / 7 * 365 / 400k * 100 = 0.52, while the pool average would be 0.70
    assert subtotal[COST] == "0.52"


def test_grand_total_sums_every_protocol():
    rows = render([pool(mon=100.0), pool(protocol="kuru", funding="merkl", market="MON-USDC", mon=50.0, tvl=None)])
    grand = rows[1]

    assert grand[MON] == "150.00"
    assert grand[TVL] == "100000.00"
    assert grand[ACTION] == "" and grand[NOTES] == ""


def test_adjustment_factor_scales_adjusted_columns_only():
    pool_row = render([pool()], prices=ReportPrices(0.2, 2.0))[3]

    assert pool_row[MON] == "100.00"
    assert pool_row[ADJ_MON] == "200.00"
    assert pool_row[COST] == "2.09"


def test_protocol_total_uses_oracle_figures():
    aggregates = ProtocolAggregates(
        tvl={"morpho": 5_000_000.0},
        dex_volume={"morpho": {"volumeInRange": None, "volume7d": 10.0, "volume30d": 99.0}},
    )
    total = render([pool(protocol="Morpho")], aggregates=aggregates)[4]

    assert total[TYPE] == "Morpho PROTOCOL TOTAL"
    assert total[TVL] == "5000000.00"
    assert total[VOLUME] == "10.00"
    assert total[MON] == ""


def test_range_volume_of_zero_is_still_preferred():
    aggregates = ProtocolAggregates(dex_volume={"morpho": {"volumeInRange": 0.0, "volume7d": 10.0}})

    assert render([pool()], aggregates=aggregates)[4][VOLUME] == "0.00"


def test_recommendations_land_on_pool_rows_only():
    issues = [EfficiencyIssue(poolId="Morpho - Morpho - USDC Vault",
                              recommendation="Reduce rewards. TVL is sticky.", issue="TVL cost above peers")]
    rows = render([pool()], efficiency_issues=issues)

    assert rows[3][ACTION] == "Reduce rewards"
    assert rows[3][NOTES] == "TVL cost above peers"
    assert rows[1][ACTION] == rows[2][ACTION] == rows[4][ACTION] == ""


def test_wow_change_against_previous_period():
    rows = render([pool(mon=100.0)], previous_pools=[pool(mon=50.0)])

    assert rows[3][WOW] == "100.00"
    assert rows[2][WOW] == "100.00"
    assert rows[1][WOW] == "100.00"


def test_wow_change_empty_without_comparable_previous():
    assert render([pool()])[3][WOW] == ""
    assert render([pool()], previous_pools=[pool(market="Other")])[3][WOW] == ""


def test_period_days_follow_the_range():
    rows = rows_of(build_report([pool()], ("2025-01-01", "2025-01-14"), PRICES, ProtocolAggregates()))

    assert rows[3][DAYS] == "14"
    assert rows[3][COST] == "0.52"


def test_market_names_with_commas_are_quoted():
    content = build_report([pool(market='Vault "A", v2')], WEEK, PRICES, ProtocolAggregates())

    assert '"Vault ""A"", v2"' in content
    assert rows_of(content)[3][POOL] == 'Vault "A", v2'


def test_row_kinds_in_order():
    kinds = [r.kind for r in build_rows([pool()], WEEK, PRICES, ProtocolAggregates())]

    assert kinds == [RowKind.GRAND_TOTAL, RowKind.SUBTOTAL, RowKind.POOL, RowKind.PROTOCOL_TOTAL]


@pytest.mark.parametrize("pools, date_range, prices, loc", [
    ([], WEEK, PRICES, ["pools"]),
    ([pool()], ("2025-01-07", "2025-01-01"), PRICES, ["dateRange"]),
    ([pool()], ("2025-13-01", "2025-01-01"), PRICES, ["dateRange"]),
    ([pool(mon=-1.0)], WEEK, PRICES, ["pools", 0, "totalMON"]),
    ([pool(mon="1000")], WEEK, PRICES, ["pools", 0, "totalMON"]),
    ([pool(mon=True)], WEEK, PRICES, ["pools", 0, "totalMON"]),
    ([pool(tvl=True)], WEEK, PRICES, ["pools", 0, "tvl"]),
    ([pool(volume="50000")], WEEK, PRICES, ["pools", 0, "volumeValue"]),
    ([pool(apr=False)], WEEK, PRICES, ["pools", 0, "apr"]),
    ([pool()], WEEK, ReportPrices(0.0), ["monPrice"]),
    ([pool()], WEEK, ReportPrices(0.2, float("nan")), ["adjustmentFactor"]),
])
def test_invalid_input_raises_structured_errors(pools, date_range, prices, loc):
    with pytest.raises(ReportValidationError) as exc:
        build_report(pools, date_range, prices, ProtocolAggregates())

    assert loc in [e["loc"] for e in exc.value.errors]


def test_all_errors_are_collected():
    with pytest.raises(ReportValidationError) as exc:
        build_report([pool(mon=-1.0), {"platformProtocol": "x"}], ("bad", "2025-01-01"), ReportPrices(-1.0), ProtocolAggregates())

    locs = [e["loc"][0] for e in exc.value.errors]
    assert "dateRange" in locs and "monPrice" in locs and locs.count("pools") >= 2


def test_fmt_number():
    assert fmt_number(None) == ""
    assert fmt_number(float("inf")) == ""
    assert fmt_number(-0.001) == "0.00"
    assert fmt_number(1.005) in ("1.00", "1.01")
    assert fmt_number(0) == "0.00"


def test_flatten_results(sample_results):
    flat = flatten_results(sample_results)

    assert [p["marketName"] for p in flat] == ["USDC Vault", "WMON Vault", "MON-USDC"]
    assert flat[2]["platformProtocol"] == "kuru"
    assert flat[2]["fundingProtocol"] == "merkl"
    assert flat[0]["merklUrl"].startswith("https://app.merkl.xyz")


def test_extract_efficiency_issues():
    analysis = {"efficiencyIssues": [{"poolId": "a-b-c", "recommendation": "x"}, {"recommendation": "no id"}]}

    assert [i.pool_id for i in extract_efficiency_issues(analysis)] == ["a-b-c"]
    assert extract_efficiency_issues("free text") == []
    assert extract_efficiency_issues(None) == []


def test_integer_amounts_are_numbers():
    rows = render([pool(mon=100, tvl=100000, volume=50000)])

    assert rows[3][MON] == "100.00"
    assert rows[3][COST] == "1.04"


def test_previous_pools_are_not_coerced_either():
    with pytest.raises(ReportValidationError) as exc:
        build_report([pool()], WEEK, PRICES, ProtocolAggregates(), previous_pools=[pool(mon="50")])

    assert exc.value.errors[0]["loc"] == ["previousPools", 0, "totalMON"]


def test_malformed_issue_does_not_break_the_report():
    issues = [{"poolId": "morpho-morpho-USDC Vault", "recommendation": None, "severity": 3}]

    rows = render([pool()], efficiency_issues=issues)

    assert rows[3][ACTION] == "" and rows[3][NOTES] == ""
