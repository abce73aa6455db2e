import re
from collections import defaultdict
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import (
    QUARTERS,
    FiscalStatement,
    MetricWithChange,
    QuarterPeriod,
    ReconstructedFinancials,
)


TRILLION = 1_000_000_000_000  # 조
HUNDRED_MILLION = 100_000_000  # 억
TEN_THOUSAND = 10_000  # 만

QUARTER_ORDER = {quarter: index for index, quarter in enumerate(QUARTERS, start=1)}

_QUARTER_BOUNDS = {
    "Q1": ("01-01", "03-31"),
    "Q2": ("04-01", "06-30"),
    "Q3": ("07-01", "09-30"),
    "Q4": ("10-01", "12-31"),
}

_EMPTY_MARKERS = {"none", "null", "nan", "n/a", "na", "-", "—", "--"}


def parse_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = str(value).strip()
    if not cleaned or cleaned.lower() in _EMPTY_MARKERS:
        return None
    negative = cleaned.startswith("(") and cleaned.endswith(")")
    cleaned = cleaned.replace("(", "").replace(")", "")
    cleaned = cleaned.replace(",", "").replace("%", "").replace("원", "")
    cleaned = cleaned.replace("−", "-").replace("–", "-")
    cleaned = re.sub(r"\s+", "", cleaned)
    match = re.search(r"-?\d+(?:\.\d+)?", cleaned)
    if not match:
        return None
    number = float(match.group(0))
    if negative and number > 0:
        number = -number
    return number


def parse_amount(value: Any) -> int:
    """Locale-formatted amount ("1,234,567", "(500)", "-12") to int; 0 when unparseable."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    cleaned = "" if value is None else re.sub(r"[,\s]", "", str(value))
    negative = cleaned.startswith("(") and cleaned.endswith(")")
    match = re.match(r"-?\d+", cleaned.strip("()"))
    if not match:
        return 0
    amount = int(match.group(0))
    return -amount if negative and amount > 0 else amount


def round_half_away(value: float, digits: int) -> float:
    try:
        quantum = Decimal(1).scaleb(-digits)
        return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return value


def format_korean_currency(amount: float) -> str:
    sign = "-" if amount < 0 else ""
    magnitude = abs(amount)
    for unit, suffix in ((TRILLION, "조"), (HUNDRED_MILLION, "억"), (TEN_THOUSAND, "만")):
        if magnitude >= unit:
            return f"{sign}{round_half_away(magnitude / unit, 1):.1f}{suffix}"
    return f"{sign}{int(magnitude)}"


def format_percentage(value: Optional[float]) -> str:
    if value is None:
        return "-"
    sign = "+" if value > 0 else ""
    return f"{sign}{value:.2f}%"


def format_stock_price(price: int) -> str:
    if not price:
        return "-"
    return f"{price:,}원"


def quarter_period(year: int, quarter: str) -> QuarterPeriod:
    start, end = _QUARTER_BOUNDS[quarter]
    return QuarterPeriod(
        year=year,
        quarter=quarter,
        start_date=f"{year}-{start}",
        end_date=f"{year}-{end}",
    )


def recent_quarters(today: Optional[date] = None, count: int = 6) -> List[QuarterPeriod]:
    """The last ``count`` completed calendar quarters, oldest first."""
    today = today or date.today()
    # Quarter index counted from year 0; the current quarter is still open.
    current = today.year * 4 + (today.month - 1) // 3
    periods = []
    for index in range(current - count, current):
        year, offset = divmod(index, 4)
        periods.append(quarter_period(year, QUARTERS[offset]))
    return periods


def sort_statements(statements: Iterable[FiscalStatement]) -> List[FiscalStatement]:
    return sorted(statements, key=lambda s: (int(s.year), QUARTER_ORDER.get(s.quarter, 99)))


def reconstruct_quarters(statements: Iterable[FiscalStatement]) -> ReconstructedFinancials:
    """Turn year-to-date filings into standalone quarterly values.

    A derived quarter needs the preceding cumulative filing of the same
    fiscal year and a positive derived revenue; otherwise the whole
    quarter (all three metrics) is left out.
    """
    by_year: Dict[int, Dict[str, FiscalStatement]] = defaultdict(dict)
    for statement in sort_statements(statements):
        if statement.quarter not in QUARTER_ORDER:
            continue
        by_year[int(statement.year)][statement.quarter] = statement

    result = ReconstructedFinancials()
    for year in sorted(by_year):
        filed = by_year[year]
        for index, quarter in enumerate(QUARTERS):
            current = filed.get(quarter)
            if current is None:
                continue
            values = _standalone_values(current, filed.get(QUARTERS[index - 1]) if index else None, index)
            if values is None:
                continue
            revenue, operating_profit, net_income = values
            result.periods.append(quarter_period(year, quarter))
            result.revenue.append(revenue)
            result.operating_profit.append(operating_profit)
            result.net_income.append(net_income)
    return result


def _standalone_values(
    current: FiscalStatement, previous: Optional[FiscalStatement], index: int
) -> Optional[Tuple[int, int, int]]:
    if index == 0:
        values = (current.revenue, current.operating_profit, current.net_income)
    else:
        if previous is None:
            return None
        values = (
            current.revenue - previous.revenue,
            current.operating_profit - previous.operating_profit,
            current.net_income - previous.net_income,
        )
    if values[0] <= 0:
        return None
    return values


def calculate_metric_changes(values: List[int]) -> List[MetricWithChange]:
    metrics: List[MetricWithChange] = []
    for index, value in enumerate(values):
        change = None
        if index > 0:
            change = percent_change(value, values[index - 1])
        metrics.append(
            MetricWithChange(
                value=value,
                change_percent=change,
                formatted_value=format_korean_currency(value),
            )
        )
    return metrics


def percent_change(current: float, previous: float) -> Optional[float]:
    if previous == 0:
        return None
    return round_half_away(((current - previous) / abs(previous)) * 100, 2)


def calculate_yoy_changes(periods: List[QuarterPeriod], values: List[int]) -> List[Optional[float]]:
    by_period = {(p.year, p.quarter): v for p, v in zip(periods, values)}
    changes: List[Optional[float]] = []
    for period, value in zip(periods, values):
        previous = by_period.get((period.year - 1, period.quarter))
        changes.append(None if previous is None else percent_change(value, previous))
    return changes


def calculate_changes(data: ReconstructedFinancials) -> Dict[str, List[MetricWithChange]]:
    series = {
        "revenue": data.revenue,
        "operating_profit": data.operating_profit,
        "net_income": data.net_income,
    }
    result: Dict[str, List[MetricWithChange]] = {}
    for name, values in series.items():
        metrics = calculate_metric_changes(values)
        for metric, yoy in zip(metrics, calculate_yoy_changes(data.periods, values)):
            metric.yoy_change_percent = yoy
        result[name] = metrics
    return result
