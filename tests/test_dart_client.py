import io
import zipfile

import pytest
import requests

from corpview.dart_client import DartClient
from corpview.errors import NotFoundError, TransportError, UpstreamDataError
from tests.helpers.fakes import FakeResponse


def _client(get_fn, max_retries=3):
    sleeps = []
    client = DartClient(
        api_key="test-key",
        base_url="https://dart.example/api/",
        max_retries=max_retries,
        base_delay=0.5,
        get_fn=get_fn,
        sleep_fn=sleeps.append,
    )
    return client, sleeps


def _accounts(*rows):
    return {
        "status": "000",
        "message": "정상",
        "list": [{"account_nm": name, "sj_div": "IS", "thstrm_amount": amount} for name, amount in rows],
    }


def test_retries_timeouts_with_exponential_backoff():
    calls = {"count": 0}

    def fake_get(*_args, **_kwargs):
        calls["count"] += 1
        if calls["count"] < 3:
            raise requests.exceptions.Timeout("timeout")
        return FakeResponse(payload={"status": "000", "list": []})

    client, sleeps = _client(fake_get)
    assert client.get_disclosures("00126380") == []
    assert calls["count"] == 3
    assert sleeps == [0.5, 1.0]


def test_retries_any_request_exception_as_network_error():
    calls = {"count": 0}

    def fake_get(*_args, **_kwargs):
        calls["count"] += 1
        raise requests.exceptions.ChunkedEncodingError("connection broken mid-body")

    client, sleeps = _client(fake_get, max_retries=2)
    with pytest.raises(TransportError) as excinfo:
        client.get_disclosures("00126380")
    assert excinfo.value.code == "NETWORK_ERROR"
    assert excinfo.value.status_code == 504
    assert calls["count"] == 3
    assert sleeps == [0.5, 1.0]


def test_does_not_retry_client_errors():
    calls = {"count": 0}

    def fake_get(*_args, **_kwargs):
        calls["count"] += 1
        return FakeResponse(status_code=403)

    client, sleeps = _client(fake_get)
    with pytest.raises(TransportError) as excinfo:
        client.get_company_info("00126380")
    assert excinfo.value.upstream_status == 403
    assert calls["count"] == 1
    assert sleeps == []


def test_gives_up_after_max_retries_on_server_errors():
    calls = {"count": 0}

    def fake_get(*_args, **_kwargs):
        calls["count"] += 1
        return FakeResponse(status_code=503)

    client, sleeps = _client(fake_get, max_retries=2)
    with pytest.raises(TransportError) as excinfo:
        client.get_company_info("00126380")
    assert excinfo.value.status_code == 502
    assert calls["count"] == 3
    assert sleeps == [0.5, 1.0]


def test_sends_api_key_and_params():
    seen = {}

    def fake_get(url, params=None, timeout=None):
        seen["url"] = url
        seen["params"] = params
        return FakeResponse(payload=_accounts(("매출액", "1,000")))

    client, _ = _client(fake_get)
    client.get_fiscal_statements("00126380", 2024, "11012")

    assert seen["url"] == "https://dart.example/api/fnlttSinglAcntAll.json"
    assert seen["params"] == {
        "crtfc_key": "test-key",
        "corp_code": "00126380",
        "bsns_year": "2024",
        "reprt_code": "11012",
        "fs_div": "CFS",
    }


def test_fiscal_statement_picks_known_accounts():
    payload = _accounts(
        ("수익(매출액)", "79,140,500,000,000"),
        ("영업이익(손실)", "10,443,900,000,000"),
        ("지배기업 소유주지분 순이익", "9,000"),
    )
    client, _ = _client(lambda *a, **k: FakeResponse(payload=payload))

    [statement] = client.get_fiscal_statements("00126380", 2024, "11014")

    assert statement.year == 2024
    assert statement.quarter == "Q3"
    assert statement.revenue == 79_140_500_000_000
    assert statement.operating_profit == 10_443_900_000_000
    assert statement.net_income == 9000


def test_no_data_status_yields_empty_statements():
    client, _ = _client(lambda *a, **k: FakeResponse(payload={"status": "013", "message": "조회된 데이타가 없습니다."}))
    assert client.get_fiscal_statements("00126380", 2024, "11013") == []


def test_rate_limit_status_is_not_retried():
    calls = {"count": 0}

    def fake_get(*_args, **_kwargs):
        calls["count"] += 1
        return FakeResponse(payload={"status": "020", "message": "요청 제한을 초과하였습니다."})

    client, _ = _client(fake_get)
    with pytest.raises(UpstreamDataError) as excinfo:
        client.get_disclosures("00126380")
    assert excinfo.value.code == "RATE_LIMIT"
    assert excinfo.value.status_code == 429
    assert calls["count"] == 1


def test_company_info_not_found():
    client, _ = _client(lambda *a, **k: FakeResponse(payload={"status": "013", "message": "no data"}))
    with pytest.raises(NotFoundError):
        client.get_company_info("99999999")


def test_company_info_maps_market():
    payload = {
        "status": "000",
        "message": "정상",
        "corp_code": "00126380",
        "corp_name": "삼성전자(주)",
        "stock_code": "005930",
        "corp_cls": "Y",
        "ceo_nm": "한종희",
        "induty_code": "264",
        "adres": "경기도 수원시",
    }
    client, _ = _client(lambda *a, **k: FakeResponse(payload=payload))

    info = client.get_company_info("00126380")
    assert info.market == "KOSPI"
    assert info.stock_code == "005930"
    assert info.ceo_name == "한종희"


def test_non_json_body_is_upstream_error():
    client, _ = _client(lambda *a, **k: FakeResponse(payload=None))
    with pytest.raises(UpstreamDataError):
        client.get_company_info("00126380")


def test_financial_details_reads_balance_sheet_totals():
    payload = _accounts(
        ("자산총계", "4,000"),
        ("부채총계", "1,500"),
        ("자본총계", "2,500"),
        ("유동자산", "1,200"),
        ("유동부채", "600"),
        ("매출액", "3,000"),
        ("영업이익", "300"),
        ("당기순이익", "200"),
    )
    client, _ = _client(lambda *a, **k: FakeResponse(payload=payload))

    details = client.get_financial_details("00126380", 2023)
    assert details.total_assets == 4000
    assert details.total_debt == 1500
    assert details.total_equity == 2500
    assert details.current_assets == 1200
    assert details.current_liabilities == 600
    assert details.net_income == 200
    assert details.ebitda == 0
    assert details.cash == 0


def test_financial_details_reads_cash_and_ebitda():
    payload = _accounts(
        ("자산총계", "4,000"),
        ("현금및현금성자산", "700"),
        ("영업이익", "300"),
        ("감가상각누계액", "-900"),
        ("감가상각비", "120"),
        ("무형자산상각비", "30"),
    )
    client, _ = _client(lambda *a, **k: FakeResponse(payload=payload))

    details = client.get_financial_details("00126380", 2023)
    assert details.cash == 700
    assert details.ebitda == 450


def test_disclosures_are_limited():
    payload = {
        "status": "000",
        "list": [
            {"report_nm": f" 보고서{i} ", "rcept_no": f"2024000{i}", "rcept_dt": f"2024010{i}", "flr_nm": "삼성전자"}
            for i in range(1, 8)
        ],
    }
    client, _ = _client(lambda *a, **k: FakeResponse(payload=payload))

    disclosures = client.get_disclosures("00126380", limit=5)
    assert len(disclosures) == 5
    assert disclosures[0].report_name == "보고서1"
    assert disclosures[0].url.endswith("rcpNo=20240001")


def _corp_code_zip():
    xml = (
        "<?xml version='1.0' encoding='UTF-8'?><result>"
        "<list><corp_code>00126380</corp_code><corp_name>삼성전자</corp_name>"
        "<stock_code>005930</stock_code><corp_cls>Y</corp_cls></list>"
        "<list><corp_code>00434003</corp_code><corp_name>다코</corp_name>"
        "<stock_code> </stock_code></list>"
        "</result>"
    )
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("CORPCODE.xml", xml.encode("utf-8"))
    return buffer.getvalue()


def test_list_companies_keeps_listed_companies_only():
    client, _ = _client(lambda *a, **k: FakeResponse(content=_corp_code_zip()))

    companies = client.list_companies()
    assert [c.corp_name for c in companies] == ["삼성전자"]
    assert companies[0].market == "KOSPI"


def test_list_companies_rejects_non_zip_body():
    client, _ = _client(lambda *a, **k: FakeResponse(content=b'{"status": "010"}'))
    with pytest.raises(UpstreamDataError):
        client.list_companies()
