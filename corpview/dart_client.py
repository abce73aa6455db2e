import io
import logging
import time
import zipfile
import xml.etree.ElementTree as ET
from typing import Any, Callable, Dict, List, Optional

import requests
from pydantic import ValidationError

from .config import DEFAULT_DART_BASE_URL
from .errors import DART_NO_DATA, NotFoundError, TransportError, UpstreamDataError
from .financials import parse_amount
from .models import (
    MARKET_BY_CORP_CLS,
    QUARTER_BY_REPORT_CODE,
    REPORT_CODES,
    CompanyInfo,
    CompanyRecord,
    DartAccountList,
    DartAccountRow,
    DartCompanyPayload,
    DartDisclosureList,
    DartEnvelope,
    Disclosure,
    FinancialDetails,
    FiscalStatement,
)
from .run_logger import log_event


logger = logging.getLogger(__name__)

REVENUE_ACCOUNTS = ("매출액", "수익(매출액)", "영업수익")
OPERATING_PROFIT_ACCOUNTS = ("영업이익", "영업이익(손실)")
NET_INCOME_ACCOUNTS = ("당기순이익", "당기순이익(손실)")
TOTAL_ASSETS_ACCOUNTS = ("자산총계",)
TOTAL_EQUITY_ACCOUNTS = ("자본총계",)
TOTAL_LIABILITIES_ACCOUNTS = ("부채총계",)
CURRENT_ASSETS_ACCOUNTS = ("유동자산",)
CURRENT_LIABILITIES_ACCOUNTS = ("유동부채",)
CASH_ACCOUNTS = ("현금및현금성자산",)
DEPRECIATION_ACCOUNTS = ("감가상각비", "유형자산감가상각비")
AMORTIZATION_ACCOUNTS = ("무형자산상각비",)


class DartClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_DART_BASE_URL,
        timeout: int = 10,
        max_retries: int = 3,
        base_delay: float = 1.0,
        get_fn: Optional[Callable[..., Any]] = None,
        sleep_fn: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._get = get_fn or requests.get
        self._sleep = sleep_fn or time.sleep

    def list_companies(self) -> List[CompanyRecord]:
        """Listed companies from the bulk registry snapshot (ZIP with CORPCODE.xml)."""
        resp = self._get_with_retry(f"{self.base_url}/corpCode.xml", {"crtfc_key": self.api_key})
        try:
            with zipfile.ZipFile(io.BytesIO(resp.content)) as zf:
                names = [n for n in zf.namelist() if n.lower().endswith(".xml")]
                if not names:
                    raise UpstreamDataError("corpCode archive has no XML member")
                root = ET.fromstring(zf.read(names[0]))
        except zipfile.BadZipFile:
            # An error reply comes back as a JSON/XML status body instead of a ZIP.
            raise UpstreamDataError("corpCode response is not a ZIP archive")
        except ET.ParseError as exc:
            raise UpstreamDataError(f"corpCode XML could not be parsed: {exc}")

        companies: List[CompanyRecord] = []
        for item in root.iter("list"):
            stock_code = (item.findtext("stock_code") or "").strip()
            if not stock_code:
                continue
            companies.append(
                CompanyRecord(
                    corp_code=(item.findtext("corp_code") or "").strip(),
                    corp_name=(item.findtext("corp_name") or "").strip(),
                    stock_code=stock_code,
                    market=MARKET_BY_CORP_CLS.get((item.findtext("corp_cls") or "").strip(), ""),
                )
            )
        log_event(logger, "dart.company_list_loaded", count=len(companies))
        return companies

    def get_company_info(self, corp_code: str) -> CompanyInfo:
        data = self._request_json("/company.json", {"corp_code": corp_code}, not_found=True)
        payload = _validate(DartCompanyPayload, data)
        return CompanyInfo(
            corp_code=payload.corp_code,
            corp_name=payload.corp_name,
            stock_code=payload.stock_code.strip(),
            market=MARKET_BY_CORP_CLS.get(payload.corp_cls, ""),
            ceo_name=payload.ceo_nm,
            industry=payload.induty_code,
            address=payload.adres,
        )

    def get_fiscal_statements(
        self, corp_code: str, year: int, report_code: str = REPORT_CODES["Q1"]
    ) -> List[FiscalStatement]:
        rows = self._account_rows(corp_code, year, report_code)
        if not rows:
            return []
        return [
            FiscalStatement(
                year=int(year),
                quarter=QUARTER_BY_REPORT_CODE.get(report_code, "Q4"),
                revenue=_find_amount(rows, REVENUE_ACCOUNTS),
                operating_profit=_find_amount(rows, OPERATING_PROFIT_ACCOUNTS),
                net_income=_find_amount(rows, NET_INCOME_ACCOUNTS, fallback_contains="지배기업"),
            )
        ]

    def get_financial_details(
        self, corp_code: str, year: int, report_code: str = REPORT_CODES["Q4"]
    ) -> FinancialDetails:
        rows = self._account_rows(corp_code, year, report_code)
        if not rows:
            return FinancialDetails()
        operating_profit = _find_amount(rows, OPERATING_PROFIT_ACCOUNTS)
        depreciation = _find_amount(rows, DEPRECIATION_ACCOUNTS, fallback_contains="감가상각비")
        # EBITDA stays 0 (unknown) when the filing carries no depreciation line.
        ebitda = 0
        if depreciation:
            ebitda = operating_profit + depreciation + _find_amount(rows, AMORTIZATION_ACCOUNTS)
        return FinancialDetails(
            total_assets=_find_amount(rows, TOTAL_ASSETS_ACCOUNTS),
            total_equity=_find_amount(rows, TOTAL_EQUITY_ACCOUNTS, fallback_contains="지배기업 소유주지분"),
            total_debt=_find_amount(rows, TOTAL_LIABILITIES_ACCOUNTS),
            current_assets=_find_amount(rows, CURRENT_ASSETS_ACCOUNTS),
            current_liabilities=_find_amount(rows, CURRENT_LIABILITIES_ACCOUNTS),
            revenue=_find_amount(rows, REVENUE_ACCOUNTS),
            operating_profit=operating_profit,
            net_income=_find_amount(rows, NET_INCOME_ACCOUNTS, fallback_contains="지배기업"),
            ebitda=ebitda,
            cash=_find_amount(rows, CASH_ACCOUNTS),
        )

    def get_disclosures(self, corp_code: str, limit: int = 5) -> List[Disclosure]:
        try:
            data = self._request_json("/list.json", {"corp_code": corp_code, "page_count": str(limit)})
        except UpstreamDataError as exc:
            if exc.is_no_data:
                return []
            raise
        payload = _validate(DartDisclosureList, data)
        return [
            Disclosure(
                report_name=row.report_nm.strip(),
                receipt_no=row.rcept_no,
                receipt_date=row.rcept_dt,
                filer_name=row.flr_nm,
            )
            for row in payload.items[:limit]
        ]

    def _account_rows(self, corp_code: str, year: int, report_code: str) -> List[DartAccountRow]:
        params = {
            "corp_code": corp_code,
            "bsns_year": str(year),
            "reprt_code": report_code,
            "fs_div": "CFS",
        }
        try:
            data = self._request_json("/fnlttSinglAcntAll.json", params)
        except UpstreamDataError as exc:
            if exc.is_no_data:
                return []
            raise
        return _validate(DartAccountList, data).items

    def _request_json(self, endpoint: str, params: Dict[str, str], not_found: bool = False) -> Dict[str, Any]:
        query = {"crtfc_key": self.api_key}
        query.update(params)
        resp = self._get_with_retry(f"{self.base_url}{endpoint}", query)
        try:
            data = resp.json()
        except ValueError:
            raise UpstreamDataError(f"{endpoint} returned a non-JSON body")
        envelope = _validate(DartEnvelope, data)
        if envelope.status != "000":
            if not_found and envelope.status == DART_NO_DATA:
                raise NotFoundError(details=params)
            raise UpstreamDataError(envelope.message or "DART API error", envelope.status)
        return data

    def _get_with_retry(self, url: str, params: Dict[str, str]) -> Any:
        last_err: Optional[TransportError] = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = self._get(url, params=params, timeout=self.timeout)
            except requests.exceptions.RequestException as exc:
                last_err = TransportError(f"request to {url} failed: {exc.__class__.__name__}")
            else:
                status = getattr(resp, "status_code", 200)
                if 200 <= status < 300:
                    return resp
                last_err = TransportError(f"request to {url} failed", upstream_status=status)
                if not last_err.retryable:
                    raise last_err
            if attempt < self.max_retries:
                delay = self.base_delay * (2 ** attempt)
                log_event(
                    logger,
                    "dart.retry",
                    logging.WARNING,
                    url=url,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(last_err),
                )
                self._sleep(delay)
        raise last_err


def _validate(model, data: Any):
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise UpstreamDataError(f"malformed {model.__name__}: {exc.error_count()} invalid field(s)")


def _find_amount(rows: List[DartAccountRow], names, fallback_contains: str = "") -> int:
    for row in rows:
        if row.account_nm.strip() in names:
            return parse_amount(row.thstrm_amount)
    if fallback_contains:
        for row in rows:
            if fallback_contains in row.account_nm:
                return parse_amount(row.thstrm_amount)
    return 0
