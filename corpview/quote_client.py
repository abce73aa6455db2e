import logging
import re
from typing import Any, Callable, List, Optional

import requests
from bs4 import BeautifulSoup
from requests import RequestException

from .financials import parse_number
from .models import ProviderResult, StockQuote
from .run_logger import log_event


logger = logging.getLogger(__name__)

NAVER_FINANCE_URL = "https://finance.naver.com/item/main.naver"

REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; CorpViewBot/1.0)",
    "Accept": "text/html",
    "Accept-Language": "ko-KR,ko;q=0.9",
}

_PRICE_TEXT = re.compile(r"\d{1,3}(?:,\d{3})*")


def _number(node) -> float:
    if node is None:
        return 0.0
    return parse_number(node.get_text(strip=True)) or 0.0


def _by_id(soup: BeautifulSoup, element_id: str) -> float:
    return _number(soup.find(id=element_id))


def _header_row(soup: BeautifulSoup, label: str):
    for th in soup.find_all("th"):
        if label in "".join(th.stripped_strings):
            return th.find_parent("tr")
    return None


def _table_row(soup: BeautifulSoup, label: str) -> float:
    """First numeric cell of the fundamentals-table row headed by ``label``."""
    row = _header_row(soup, label)
    if row is None:
        return 0.0
    for td in row.find_all("td"):
        value = parse_number(td.get_text(strip=True))
        if value is not None:
            return value
    return 0.0


def _row_values(soup: BeautifulSoup, label: str) -> List[int]:
    row = _header_row(soup, label)
    if row is None:
        return []
    return [int(_number(em)) for em in row.find_all("em")]


def _price(soup: BeautifulSoup) -> int:
    today = soup.find("p", class_=lambda x: x and "no_today" in x)
    if today is not None:
        match = _PRICE_TEXT.search(today.get_text(" ", strip=True))
        if match:
            return int(match.group(0).replace(",", ""))
    label = soup.find(string=lambda text: text and "현재가" in text)
    if label is not None:
        for text in label.find_all_next(string=True):
            match = _PRICE_TEXT.search(text)
            if match:
                return int(match.group(0).replace(",", ""))
    return 0


def parse_stock_price(html: str) -> int:
    return _price(BeautifulSoup(html or "", "html.parser"))


def parse_quote_html(html: str) -> StockQuote:
    soup = BeautifulSoup(html or "", "html.parser")
    quote = StockQuote(
        price=_price(soup),
        dividend_yield=_by_id(soup, "_dvr"),
        per=_by_id(soup, "_per"),
        pbr=_by_id(soup, "_pbr"),
        eps=_by_id(soup, "_eps"),
        roe=_table_row(soup, "ROE"),
        operating_margin=_table_row(soup, "영업이익률"),
        debt_ratio=_table_row(soup, "부채비율"),
        current_ratio=_table_row(soup, "당좌비율"),
    )
    high_low = _row_values(soup, "52주최고")
    if len(high_low) >= 2:
        quote.high_52w, quote.low_52w = high_low[0], high_low[1]
    shares = _row_values(soup, "상장주식수")
    if shares:
        quote.shares_outstanding = shares[0]
    return quote


class QuoteClient:
    def __init__(
        self,
        base_url: str = NAVER_FINANCE_URL,
        timeout: int = 10,
        get_fn: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._get = get_fn or requests.get

    def get_quote(self, ticker: str) -> ProviderResult[StockQuote]:
        if not ticker:
            return ProviderResult.failure(StockQuote(), "no ticker")
        try:
            resp = self._get(
                self.base_url,
                params={"code": ticker},
                headers=REQUEST_HEADERS,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            html = resp.text
        except RequestException as exc:
            log_event(logger, "quote.fetch_failed", logging.WARNING, ticker=ticker, error=str(exc))
            return ProviderResult.failure(StockQuote(), f"transport: {exc.__class__.__name__}")

        quote = parse_quote_html(html)
        if quote.price == 0:
            log_event(logger, "quote.price_missing", logging.WARNING, ticker=ticker)
            return ProviderResult.failure(quote, "no data: price not found")
        return ProviderResult(value=quote)
