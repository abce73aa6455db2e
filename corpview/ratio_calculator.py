import math
from typing import Any, Dict, Optional

from .models import FinancialDetails


def _is_undefined(value: Optional[float]) -> bool:
    if value is None:
        return True
    try:
        return value == 0 or math.isnan(value)
    except TypeError:
        return True


def _safe_divide(numerator: Optional[float], denominator: Optional[float]) -> Optional[float]:
    if _is_undefined(denominator) or numerator is None:
        return None
    try:
        if math.isnan(numerator):
            return None
    except TypeError:
        return None
    return numerator / denominator


def _safe_percent(numerator: Optional[float], denominator: Optional[float]) -> Optional[float]:
    ratio = _safe_divide(numerator, denominator)
    return None if ratio is None else ratio * 100


def calculate_eps(net_income: float, total_shares: float) -> Optional[float]:
    return _safe_divide(net_income, total_shares)


def calculate_pbr(stock_price: float, book_value_per_share: float) -> Optional[float]:
    return _safe_divide(stock_price, book_value_per_share)


def calculate_roa(net_income: float, total_assets: float) -> Optional[float]:
    return _safe_percent(net_income, total_assets)


def calculate_roe(net_income: float, total_equity: float) -> Optional[float]:
    return _safe_percent(net_income, total_equity)


def calculate_ev_ebitda(enterprise_value: float, ebitda: float) -> Optional[float]:
    return _safe_divide(enterprise_value, ebitda)


def calculate_operating_margin(operating_profit: float, revenue: float) -> Optional[float]:
    return _safe_percent(operating_profit, revenue)


def calculate_debt_ratio(total_debt: float, total_equity: float) -> Optional[float]:
    return _safe_percent(total_debt, total_equity)


def calculate_current_ratio(current_assets: float, current_liabilities: float) -> Optional[float]:
    return _safe_percent(current_assets, current_liabilities)


def book_value_per_share(total_equity: float, total_shares: float) -> float:
    if total_shares and total_shares > 0:
        return total_equity / total_shares
    return 0.0


def enterprise_value(
    market_cap: Optional[float], total_debt: Optional[float], cash: Optional[float]
) -> float:
    if market_cap is None or total_debt is None or cash is None:
        return 0.0
    return market_cap + total_debt - cash


def calculate_all_ratios(
    details: FinancialDetails,
    stock_price: float,
    net_income: float,
    market_cap: Optional[float] = None,
    total_debt: Optional[float] = None,
    cash: Optional[float] = None,
) -> Dict[str, Optional[float]]:
    bvps = book_value_per_share(details.total_equity, details.total_shares)
    ev = enterprise_value(market_cap, total_debt, cash)
    return {
        "eps": calculate_eps(net_income, details.total_shares),
        "pbr": calculate_pbr(stock_price, bvps),
        "roa": calculate_roa(net_income, details.total_assets),
        "roe": calculate_roe(net_income, details.total_equity),
        "ev_ebitda": calculate_ev_ebitda(ev, details.ebitda) if details.ebitda > 0 else None,
    }


def calculate_extended_ratios(
    details: FinancialDetails,
    stock_price: float,
    net_income: float,
    market_cap: Optional[float] = None,
    total_debt: Optional[float] = None,
    cash: Optional[float] = None,
) -> Dict[str, Optional[float]]:
    ratios = calculate_all_ratios(details, stock_price, net_income, market_cap, total_debt, cash)
    ratios.update(
        {
            "operating_margin": calculate_operating_margin(details.operating_profit, details.revenue),
            "debt_ratio": calculate_debt_ratio(details.total_debt, details.total_equity),
            "current_ratio": calculate_current_ratio(details.current_assets, details.current_liabilities),
        }
    )
    return ratios


def format_ratio(value: Optional[float], decimals: int = 2) -> str:
    if value is None:
        return "-"
    return f"{value:.{decimals}f}"


def format_ratio_as_percent(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:.2f}%"


def positive_or_none(value: Any) -> Optional[float]:
    """Quote-page figures use 0 for "not reported"."""
    try:
        return value if value > 0 else None
    except TypeError:
        return None
