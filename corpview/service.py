"""Request-level orchestration: cache keys, fetch callbacks and response payloads."""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .cache import (
    CACHE_TTL,
    COMPANY_LIST_KEY,
    SWR_CONFIG,
    CacheManager,
    SWROptions,
    company_info_key,
    disclosures_key,
    financial_details_key,
    financial_key,
    news_key,
)
from .errors import ERROR_MESSAGES, AppError, TransportError
from .financials import (
    calculate_changes,
    format_stock_price,
    reconstruct_quarters,
    round_half_away,
)
from .models import QUARTERS, REPORT_CODES, CompanyRecord, FinancialDetails, FiscalStatement, StockQuote
from .ratio_calculator import calculate_extended_ratios, positive_or_none
from .run_logger import log_event
from .search import MIN_QUERY_LENGTH, CompanySearchIndex


logger = logging.getLogger(__name__)

FINANCIAL_YEARS = 4
MAX_QUARTERS = 12
DISCLOSURE_LIMIT = 5
NEWS_LIMIT = 10

SEARCH_CACHE_CONTROL = (60, 120)
RATIOS_CACHE_CONTROL = (300, 600)


@dataclass
class ServiceResponse:
    """Payload plus what the HTTP layer needs for caching headers."""

    data: Dict[str, Any]
    cache_status: str = "fresh"
    max_age: int = 0
    stale_while_revalidate: int = 0


def _swr_headers(options: SWROptions):
    # Clients may serve their copy for the fresh window, then revalidate up to max_age.
    return options.stale_time, options.max_age


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CompanyService:
    def __init__(
        self,
        dart,
        quotes,
        news,
        cache: CacheManager,
        search_index: Optional[CompanySearchIndex] = None,
        today: Callable[[], date] = date.today,
        parallel: bool = True,
        max_workers: int = 4,
    ) -> None:
        self.dart = dart
        self.quotes = quotes
        self.news = news
        self.cache = cache
        self.search_index = search_index or CompanySearchIndex()
        self.today = today
        self.parallel = parallel
        self.max_workers = max_workers
        self._index_lock = asyncio.Lock()

    async def ensure_search_index(self) -> int:
        if self.search_index.is_initialized():
            return self.search_index.company_count()
        async with self._index_lock:
            if self.search_index.is_initialized():
                return self.search_index.company_count()
            cached = await self.cache.get(COMPANY_LIST_KEY)
            if cached:
                companies = [CompanyRecord.from_dict(item) for item in cached]
                source = "cache"
            else:
                companies = await asyncio.to_thread(self.dart.list_companies)
                await self.cache.set(
                    COMPANY_LIST_KEY,
                    [company.to_dict() for company in companies],
                    CACHE_TTL["company_list"],
                )
                source = "registry"
            self.search_index.initialize_index(companies)
            log_event(logger, "search.index_initialized", count=len(companies), source=source)
            return len(companies)

    async def search_companies(self, query: str, limit: int = 10) -> ServiceResponse:
        max_age, swr = SEARCH_CACHE_CONTROL
        if len((query or "").strip()) < MIN_QUERY_LENGTH:
            data = {"companies": [], "total": 0, "message": ERROR_MESSAGES["INVALID_QUERY"]}
            return ServiceResponse(data=data, max_age=max_age, stale_while_revalidate=swr)
        await self.ensure_search_index()
        companies = self.search_index.search(query, limit)
        data = {"companies": [company.to_dict() for company in companies], "total": len(companies)}
        return ServiceResponse(data=data, max_age=max_age, stale_while_revalidate=swr)

    async def get_company_details(self, corp_code: str) -> ServiceResponse:
        async def fetch():
            info = await asyncio.to_thread(self.dart.get_company_info, corp_code)
            quote = await asyncio.to_thread(self.quotes.get_quote, info.stock_code)
            if not quote.ok:
                log_event(logger, "company.quote_unavailable", logging.INFO, corp_code=corp_code, reason=quote.reason)
            price = quote.value.price
            return {
                "company": info.to_dict(),
                "stock_price": price,
                "formatted_price": format_stock_price(price),
                "quote": quote.value.to_dict(),
                "quote_available": quote.ok,
                "last_updated": _now_iso(),
            }

        return await self._swr(company_info_key(corp_code), fetch, SWR_CONFIG["company_info"])

    async def get_financial_performance(self, corp_code: str) -> ServiceResponse:
        today = self.today()
        years = [today.year - offset for offset in range(FINANCIAL_YEARS - 1, -1, -1)]

        async def fetch():
            statements = await asyncio.to_thread(self._collect_statements, corp_code, years)
            return build_financial_payload(statements)

        return await self._swr(financial_key(corp_code, today), fetch, SWR_CONFIG["financial_data"])

    async def get_ratios(self, corp_code: str) -> ServiceResponse:
        company_data = (await self.get_company_details(corp_code)).data
        quote, quote_ok = await self._quote_snapshot(company_data)
        details = await self._financial_details(corp_code, self.today().year - 1)

        market_cap = None
        if quote.price > 0 and quote.shares_outstanding > 0:
            market_cap = quote.price * quote.shares_outstanding
        calculated: Dict[str, Optional[float]] = {}
        if details is not None:
            details.total_shares = quote.shares_outstanding
            if market_cap is None:
                raw = calculate_extended_ratios(details, quote.price, details.net_income)
                raw["ev_ebitda"] = None
            else:
                raw = calculate_extended_ratios(
                    details,
                    quote.price,
                    details.net_income,
                    market_cap=market_cap,
                    total_debt=details.total_debt,
                    cash=details.cash,
                )
            calculated = {
                name: None if value is None else round_half_away(value, 2)
                for name, value in raw.items()
            }

        data = {
            "ratios": {
                "per": positive_or_none(quote.per),
                "pbr": positive_or_none(quote.pbr),
                "roe": positive_or_none(quote.roe),
                "dividend_yield": positive_or_none(quote.dividend_yield),
                "eps": positive_or_none(quote.eps),
                "high_52w": positive_or_none(quote.high_52w),
                "low_52w": positive_or_none(quote.low_52w),
                "operating_margin": positive_or_none(quote.operating_margin),
                "debt_ratio": positive_or_none(quote.debt_ratio),
                "current_ratio": positive_or_none(quote.current_ratio),
            },
            "calculated": calculated,
            "stock_price": quote.price,
            "market_cap": market_cap,
            "total_shares": quote.shares_outstanding,
            "quote_available": quote_ok,
            "calculated_at": _now_iso(),
        }
        max_age, swr = RATIOS_CACHE_CONTROL
        return ServiceResponse(data=data, max_age=max_age, stale_while_revalidate=swr)

    async def get_disclosures(self, corp_code: str) -> ServiceResponse:
        async def fetch():
            disclosures = await asyncio.to_thread(self.dart.get_disclosures, corp_code, DISCLOSURE_LIMIT)
            ordered = sorted(disclosures, key=lambda item: item.receipt_date, reverse=True)
            return {"disclosures": [item.to_dict() for item in ordered], "total": len(ordered)}

        return await self._swr(disclosures_key(corp_code), fetch, SWR_CONFIG["disclosures"])

    async def get_news(self, corp_code: str) -> ServiceResponse:
        async def fetch():
            company = (await self.get_company_details(corp_code)).data["company"]
            result = await asyncio.to_thread(self.news.get_articles, company.get("corp_name", ""), NEWS_LIMIT)
            if not result.ok:
                log_event(logger, "news.unavailable", logging.INFO, corp_code=corp_code, reason=result.reason)
            articles = [article.to_dict() for article in result.value]
            return {"articles": articles, "total": len(articles)}

        return await self._swr(news_key(corp_code), fetch, SWR_CONFIG["news"])

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "cache": self.cache.stats(),
            "search_index": {
                "initialized": self.search_index.is_initialized(),
                "companies": self.search_index.company_count(),
            },
        }

    async def _swr(self, key: str, fetch, options: SWROptions) -> ServiceResponse:
        result = await self.cache.get_with_swr(key, fetch, options)
        if result.data is None:
            if isinstance(result.error, asyncio.TimeoutError):
                raise TransportError(f"fetch for {key} timed out")
            if result.error is not None:
                raise result.error
            raise AppError("DATA_UNAVAILABLE", 503)
        max_age, swr = _swr_headers(options)
        return ServiceResponse(
            data=result.data,
            cache_status=result.status,
            max_age=max_age,
            stale_while_revalidate=swr,
        )

    async def _quote_snapshot(self, company_data: Dict[str, Any]) -> Tuple[StockQuote, bool]:
        snapshot = company_data.get("quote")
        if snapshot is not None:
            return StockQuote(**snapshot), bool(company_data.get("quote_available"))
        # Company entries cached without a quote snapshot.
        ticker = company_data.get("company", {}).get("stock_code", "")
        result = await asyncio.to_thread(self.quotes.get_quote, ticker)
        return result.value, result.ok

    async def _financial_details(self, corp_code: str, year: int) -> Optional[FinancialDetails]:
        key = financial_details_key(corp_code, year)
        cached = await self.cache.get(key)
        if cached is not None:
            return FinancialDetails.from_dict(cached)
        try:
            details = await asyncio.to_thread(self.dart.get_financial_details, corp_code, year)
        except AppError as exc:
            # Computed ratios are optional; quote-derived ratios are still served.
            log_event(logger, "ratios.details_unavailable", logging.WARNING, corp_code=corp_code, error=str(exc))
            return None
        await self.cache.set(key, details.to_dict(), CACHE_TTL["financial_data"])
        return details

    def _collect_statements(self, corp_code: str, years: List[int]) -> List[FiscalStatement]:
        """Every filing for ``years``. Single filings may fail; all failing is an error."""
        jobs = [(year, quarter) for year in years for quarter in QUARTERS]

        def fetch_one(year: int, quarter: str) -> List[FiscalStatement]:
            return self.dart.get_fiscal_statements(corp_code, year, REPORT_CODES[quarter])

        outcomes = []
        if self.parallel:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [executor.submit(fetch_one, year, quarter) for year, quarter in jobs]
                for job, fut in zip(jobs, futures):
                    outcomes.append((job, _result_or_error(fut.result)))
        else:
            for year, quarter in jobs:
                outcomes.append(((year, quarter), _result_or_error(lambda: fetch_one(year, quarter))))

        statements: List[FiscalStatement] = []
        errors: List[AppError] = []
        for (year, quarter), outcome in outcomes:
            if isinstance(outcome, AppError):
                errors.append(outcome)
                log_event(
                    logger,
                    "financial.filing_skipped",
                    logging.WARNING,
                    corp_code=corp_code,
                    period=f"{year}-{quarter}",
                    error=str(outcome),
                )
                continue
            statements.extend(outcome)
        if errors and len(errors) == len(jobs):
            raise errors[-1]
        return statements


def _result_or_error(call):
    try:
        return call()
    except AppError as exc:
        return exc


def build_financial_payload(statements: List[FiscalStatement]) -> Dict[str, Any]:
    data = reconstruct_quarters(statements)
    changes = calculate_changes(data)
    start = max(0, len(data.periods) - MAX_QUARTERS)
    periods = data.periods[start:]
    metrics = {name: [m.to_dict() for m in values[start:]] for name, values in changes.items()}
    chart_data = [
        {
            "quarter": period.label,
            "revenue": metrics["revenue"][i]["value"],
            "operating_profit": metrics["operating_profit"][i]["value"],
            "net_income": metrics["net_income"][i]["value"],
        }
        for i, period in enumerate(periods)
    ]
    return {
        "quarters": [period.to_dict() for period in periods],
        "metrics": metrics,
        "chart_data": chart_data,
        "last_updated": _now_iso(),
    }
