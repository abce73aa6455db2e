from typing import Iterable, List, Optional

from .models import CompanyRecord


MIN_QUERY_LENGTH = 2

SCORE_EXACT_NAME = 100
SCORE_NAME_PREFIX = 80
SCORE_EXACT_TICKER = 70
SCORE_NAME_CONTAINS = 60
SCORE_TICKER_PREFIX = 50
SCORE_SUBSEQUENCE = 40


class CompanySearchIndex:
    """In-memory company lookup with scored partial and initials-style matching."""

    def __init__(self) -> None:
        self._companies: List[CompanyRecord] = []
        self._initialized = False

    def initialize_index(self, companies: Iterable[CompanyRecord]) -> None:
        self._companies = list(companies)
        self._initialized = True

    def is_initialized(self) -> bool:
        return self._initialized

    def clear_index(self) -> None:
        self._companies = []
        self._initialized = False

    def search(self, query: str, limit: int = 10) -> List[CompanyRecord]:
        normalized = (query or "").strip().lower()
        if not self._initialized or len(normalized) < MIN_QUERY_LENGTH or limit <= 0:
            return []

        scored = []
        for company in self._companies:
            score = relevance_score(company, normalized)
            if score > 0:
                scored.append((score, company))
        # sorted() is stable, so equal scores keep registry order.
        scored = sorted(scored, key=lambda item: item[0], reverse=True)
        return [company for _, company in scored[:limit]]

    def get_company_by_code(self, corp_code: str) -> Optional[CompanyRecord]:
        for company in self._companies:
            if company.corp_code == corp_code:
                return company
        return None

    def get_company_by_ticker(self, stock_code: str) -> Optional[CompanyRecord]:
        for company in self._companies:
            if company.stock_code == stock_code:
                return company
        return None

    def company_count(self) -> int:
        return len(self._companies)


def relevance_score(company: CompanyRecord, query: str) -> int:
    name = company.corp_name.lower()
    ticker = company.stock_code.lower()

    if name == query:
        return SCORE_EXACT_NAME
    if name.startswith(query):
        return SCORE_NAME_PREFIX
    if ticker and ticker == query:
        return SCORE_EXACT_TICKER
    if query in name:
        return SCORE_NAME_CONTAINS
    if ticker and ticker.startswith(query):
        return SCORE_TICKER_PREFIX
    if is_subsequence(query, name):
        return SCORE_SUBSEQUENCE
    return 0


def is_subsequence(query: str, text: str) -> bool:
    position = 0
    for char in query:
        found = text.find(char, position)
        if found == -1:
            return False
        position = found + 1
    return True
