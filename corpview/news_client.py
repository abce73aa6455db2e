import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Callable, List, Optional

import requests
from bs4 import BeautifulSoup
from requests import RequestException

from .models import NewsArticle, ProviderResult
from .run_logger import log_event


logger = logging.getLogger(__name__)

NAVER_NEWS_SEARCH_URL = "https://search.naver.com/search.naver"
DEFAULT_SOURCE = "네이버 뉴스"

REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; CorpViewBot/1.0)",
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "ko-KR,ko;q=0.9",
}

_DATE_TEXT = re.compile(r"\d{4}\.\d{1,2}\.\d{1,2}|\d+\s*(?:일|시간|분)\s*전")
_ABSOLUTE_DATE = re.compile(r"(\d{4})\.(\d{1,2})\.(\d{1,2})")
_RELATIVE_DATE = re.compile(r"(\d+)\s*(일|시간|분)\s*전")


def parse_date(text: str, now: Optional[datetime] = None) -> str:
    """ISO date from "2024.01.15" or a relative "3일 전"; today when unrecognised."""
    now = now or datetime.now()
    cleaned = (text or "").strip()
    absolute = _ABSOLUTE_DATE.search(cleaned)
    if absolute:
        year, month, day = (int(part) for part in absolute.groups())
        try:
            return date(year, month, day).isoformat()
        except ValueError:
            return now.date().isoformat()
    relative = _RELATIVE_DATE.search(cleaned)
    if relative:
        amount = int(relative.group(1))
        unit = relative.group(2)
        if unit == "일":
            delta = timedelta(days=amount)
        elif unit == "시간":
            delta = timedelta(hours=amount)
        else:
            delta = timedelta(minutes=amount)
        return (now - delta).date().isoformat()
    return now.date().isoformat()


def _article_area(link):
    return link.find_parent(class_=lambda x: x and "news_area" in x)


def parse_news_html(html: str, limit: int = 10, now: Optional[datetime] = None) -> List[NewsArticle]:
    now = now or datetime.now()
    soup = BeautifulSoup(html or "", "html.parser")

    articles = []
    for link in soup.select("a.news_tit")[: max(limit, 0)]:
        url = link.get("href")
        if not url:
            continue
        published = now.date().isoformat()
        source = DEFAULT_SOURCE
        area = _article_area(link)
        if area is not None:
            for span in area.find_all("span", class_="info"):
                text = span.get_text(strip=True)
                if _DATE_TEXT.search(text):
                    published = parse_date(text, now)
                    break
            press = area.select_one("a.info.press")
            if press is not None and press.get_text(strip=True):
                source = press.get_text(strip=True)
        articles.append(
            NewsArticle(
                title=link.get("title") or link.get_text(strip=True),
                url=url,
                published_date=published,
                source=source,
            )
        )
    # ISO dates sort lexically; sorted() keeps page order within a day.
    return sorted(articles, key=lambda article: article.published_date, reverse=True)


class NewsClient:
    def __init__(
        self,
        base_url: str = NAVER_NEWS_SEARCH_URL,
        timeout: int = 10,
        get_fn: Optional[Callable[..., Any]] = None,
        now_fn: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._get = get_fn or requests.get
        self._now = now_fn

    def get_articles(self, query: str, limit: int = 10) -> ProviderResult[List[NewsArticle]]:
        if not query:
            return ProviderResult.failure([], "empty query")
        try:
            resp = self._get(
                self.base_url,
                params={"where": "news", "query": query, "sort": "1"},
                headers=REQUEST_HEADERS,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            html = resp.text
        except RequestException as exc:
            log_event(logger, "news.fetch_failed", logging.WARNING, query=query, error=str(exc))
            return ProviderResult.failure([], f"transport: {exc.__class__.__name__}")

        articles = parse_news_html(html, limit, self._now())
        if not articles:
            return ProviderResult.failure([], "no data: no articles found")
        return ProviderResult(value=articles)
