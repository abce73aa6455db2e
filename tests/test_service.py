import asyncio
from datetime import date

import pytest

from corpview.cache import CacheManager
from corpview.errors import ERROR_MESSAGES, NotFoundError, TransportError
from corpview.service import CompanyService, build_financial_payload
from tests.helpers.fake_services import SAMSUNG, FakeDart, FakeNews, FakeQuotes, transport_failure
from tests.helpers.fakes import FakeClock, FakeKVStore


TODAY = date(2024, 5, 10)


def _service(dart=None, quotes=None, news=None, clock=None, store=None, parallel=False):
    cache = CacheManager(store=store, clock=clock or FakeClock())
    return CompanyService(
        dart=dart or FakeDart(),
        quotes=quotes or FakeQuotes(),
        news=news or FakeNews(),
        cache=cache,
        today=lambda: TODAY,
        parallel=parallel,
    )


def test_financial_performance_reconstructs_quarters():
    dart = FakeDart()
    service = _service(dart=dart)

    result = asyncio.run(service.get_financial_performance(SAMSUNG.corp_code))

    data = result.data
    assert [q["label"] for q in data["quarters"]] == ["2023-Q1", "2023-Q2", "2023-Q3", "2023-Q4"]
    assert [m["value"] for m in data["metrics"]["revenue"]] == [100_000, 150_000, 170_000, 180_000]
    assert data["metrics"]["revenue"][1]["change_percent"] == 50.0
    assert data["metrics"]["revenue"][1]["formatted_value"] == "15.0만"
    assert data["chart_data"][0] == {
        "quarter": "2023-Q1",
        "revenue": 100_000,
        "operating_profit": 10_000,
        "net_income": 5_000,
    }
    # Four fiscal years, four reports each.
    assert dart.calls["get_fiscal_statements"] == 16
    assert result.cache_status == "fresh"
    assert (result.max_age, result.stale_while_revalidate) == (1800, 3600)


def test_financial_performance_is_served_from_cache():
    dart = FakeDart()
    service = _service(dart=dart, parallel=True)

    async def scenario():
        first = await service.get_financial_performance(SAMSUNG.corp_code)
        second = await service.get_financial_performance(SAMSUNG.corp_code)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.data == second.data
    assert dart.calls["get_fiscal_statements"] == 16


def test_financial_performance_tolerates_partial_failures():
    class FlakyDart(FakeDart):
        def get_fiscal_statements(self, corp_code, year, report_code):
            if year == 2021:
                raise TransportError("timeout")
            return super().get_fiscal_statements(corp_code, year, report_code)

    result = asyncio.run(_service(dart=FlakyDart()).get_financial_performance(SAMSUNG.corp_code))
    assert len(result.data["quarters"]) == 4


def test_financial_performance_raises_when_every_filing_fails():
    dart = FakeDart()
    dart.fail_with = transport_failure()

    with pytest.raises(TransportError):
        asyncio.run(_service(dart=dart).get_financial_performance(SAMSUNG.corp_code))


def test_build_financial_payload_keeps_last_twelve_quarters():
    from corpview.models import FiscalStatement

    statements = []
    for year in range(2020, 2025):
        for index, quarter in enumerate(("Q1", "Q2", "Q3", "Q4"), start=1):
            statements.append(FiscalStatement(year, quarter, revenue=100 * index))
    payload = build_financial_payload(statements)

    assert len(payload["quarters"]) == 12
    assert payload["quarters"][0]["label"] == "2022-Q1"
    assert len(payload["chart_data"]) == 12


def test_company_details_include_price():
    result = asyncio.run(_service().get_company_details(SAMSUNG.corp_code))

    assert result.data["company"]["corp_name"] == "삼성전자"
    assert result.data["stock_price"] == 50_000
    assert result.data["formatted_price"] == "50,000원"


def test_company_details_degrade_when_quote_fails():
    result = asyncio.run(_service(quotes=FakeQuotes(ok=False)).get_company_details(SAMSUNG.corp_code))

    assert result.data["stock_price"] == 0
    assert result.data["formatted_price"] == "-"


def test_unknown_company_raises_not_found():
    with pytest.raises(NotFoundError):
        asyncio.run(_service().get_company_details("99999999"))


def test_expired_entry_is_served_stale_when_registry_fails():
    clock = FakeClock()
    dart = FakeDart()
    service = _service(dart=dart, clock=clock)

    async def scenario():
        await service.get_disclosures(SAMSUNG.corp_code)
        clock.advance(1801)
        dart.fail_with = transport_failure()
        return await service.get_disclosures(SAMSUNG.corp_code)

    result = asyncio.run(scenario())
    assert result.cache_status == "stale"
    assert result.data["total"] == 3


def test_stale_entry_revalidates_in_background():
    clock = FakeClock()
    dart = FakeDart()
    service = _service(dart=dart, clock=clock)

    async def scenario():
        await service.get_disclosures(SAMSUNG.corp_code)
        clock.advance(1000)
        stale = await service.get_disclosures(SAMSUNG.corp_code)
        await service.cache.wait_for_revalidations()
        fresh = await service.get_disclosures(SAMSUNG.corp_code)
        return stale, fresh

    stale, fresh = asyncio.run(scenario())
    assert stale.cache_status == "stale"
    assert fresh.cache_status == "fresh"
    assert dart.calls["get_disclosures"] == 2


def test_disclosures_sorted_newest_first_with_viewer_url():
    result = asyncio.run(_service().get_disclosures(SAMSUNG.corp_code))

    dates = [d["receipt_date"] for d in result.data["disclosures"]]
    assert dates == ["20240515", "20240420", "20240312"]
    assert result.data["disclosures"][0]["url"] == (
        "https://dart.fss.or.kr/dsaf001/main.do?rcpNo=20240515000001"
    )


def test_news_searches_by_company_name():
    news = FakeNews()
    result = asyncio.run(_service(news=news).get_news(SAMSUNG.corp_code))

    assert news.queries == ["삼성전자"]
    assert result.data["total"] == 1


def test_news_failure_yields_empty_list():
    result = asyncio.run(_service(news=FakeNews(ok=False)).get_news(SAMSUNG.corp_code))
    assert result.data == {"articles": [], "total": 0}


def test_ratios_combine_quote_and_computed_values():
    result = asyncio.run(_service().get_ratios(SAMSUNG.corp_code))

    ratios = result.data["ratios"]
    assert ratios["per"] == 12.3
    assert ratios["roe"] is None
    assert ratios["high_52w"] == 60_000

    calculated = result.data["calculated"]
    assert calculated["eps"] == 2000.0
    assert calculated["roe"] == 10.0
    assert calculated["pbr"] == 2.5
    assert calculated["debt_ratio"] == 50.0
    assert calculated["current_ratio"] == 150.0
    assert calculated["ev_ebitda"] == 55.0
    assert result.data["market_cap"] == 5_000_000
    assert (result.max_age, result.stale_while_revalidate) == (300, 600)


def test_ratios_reuse_the_cached_quote_snapshot():
    quotes = FakeQuotes()
    service = _service(quotes=quotes)

    async def scenario():
        details = await service.get_company_details(SAMSUNG.corp_code)
        ratios = await service.get_ratios(SAMSUNG.corp_code)
        return details, ratios

    details, ratios = asyncio.run(scenario())

    assert quotes.calls == 1
    assert details.data["quote"]["shares_outstanding"] == 100
    assert ratios.data["quote_available"] is True
    assert ratios.data["ratios"]["pbr"] == 1.4


def test_ratios_without_quote_leave_ev_ebitda_empty():
    result = asyncio.run(_service(quotes=FakeQuotes(ok=False)).get_ratios(SAMSUNG.corp_code))

    assert result.data["market_cap"] is None
    assert result.data["quote_available"] is False
    assert result.data["calculated"]["ev_ebitda"] is None
    assert result.data["calculated"]["roe"] == 10.0


def test_ratios_survive_missing_registry_details():
    dart = FakeDart()
    dart.details_error = transport_failure()

    result = asyncio.run(_service(dart=dart).get_ratios(SAMSUNG.corp_code))

    assert result.data["calculated"] == {}
    assert result.data["ratios"]["per"] == 12.3


def test_search_short_query_returns_message():
    dart = FakeDart()
    result = asyncio.run(_service(dart=dart).search_companies("삼"))

    assert result.data == {"companies": [], "total": 0, "message": ERROR_MESSAGES["INVALID_QUERY"]}
    assert "list_companies" not in dart.calls


def test_search_index_loads_from_registry_then_cache():
    clock = FakeClock()
    store = FakeKVStore(clock)
    first_dart = FakeDart()
    first = _service(dart=first_dart, clock=clock, store=store)

    result = asyncio.run(first.search_companies("삼성"))
    assert [c["corp_name"] for c in result.data["companies"]] == ["삼성전자", "삼성물산"]
    assert first_dart.calls["list_companies"] == 1

    second_dart = FakeDart()
    second = _service(dart=second_dart, clock=clock, store=store)
    result = asyncio.run(second.search_companies("삼성물산"))
    assert result.data["total"] == 1
    assert "list_companies" not in second_dart.calls


def test_health_reports_cache_and_index():
    service = _service()
    asyncio.run(service.search_companies("삼성"))

    health = service.health()
    assert health["status"] == "ok"
    assert health["search_index"] == {"initialized": True, "companies": 2}
    assert "revalidation_failures" in health["cache"]
