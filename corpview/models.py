"""Domain records and the upstream payload schemas they are narrowed from."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


T = TypeVar("T")

QUARTERS = ("Q1", "Q2", "Q3", "Q4")

# DART report codes per filing period; Q4 is the annual report.
REPORT_CODES = {"Q1": "11013", "Q2": "11012", "Q3": "11014", "Q4": "11011"}
QUARTER_BY_REPORT_CODE = {code: quarter for quarter, code in REPORT_CODES.items()}

MARKET_BY_CORP_CLS = {"Y": "KOSPI", "K": "KOSDAQ", "N": "KONEX"}

DISCLOSURE_VIEWER_URL = "https://dart.fss.or.kr/dsaf001/main.do?rcpNo={receipt_no}"


@dataclass(frozen=True)
class CompanyRecord:
    corp_code: str
    corp_name: str
    stock_code: str = ""
    market: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompanyRecord":
        return cls(
            corp_code=str(data.get("corp_code", "")),
            corp_name=str(data.get("corp_name", "")),
            stock_code=str(data.get("stock_code", "") or ""),
            market=str(data.get("market", "") or ""),
        )


@dataclass
class CompanyInfo:
    corp_code: str
    corp_name: str
    stock_code: str = ""
    market: str = ""
    ceo_name: str = ""
    industry: str = ""
    address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FiscalStatement:
    """One filed period. Q1 is standalone, Q2-Q4 are year-to-date cumulative."""

    year: int
    quarter: str
    revenue: int = 0
    operating_profit: int = 0
    net_income: int = 0


@dataclass(frozen=True)
class QuarterPeriod:
    year: int
    quarter: str
    start_date: str
    end_date: str

    @property
    def label(self) -> str:
        return f"{self.year}-{self.quarter}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["label"] = self.label
        return data


@dataclass
class ReconstructedFinancials:
    periods: List[QuarterPeriod] = field(default_factory=list)
    revenue: List[int] = field(default_factory=list)
    operating_profit: List[int] = field(default_factory=list)
    net_income: List[int] = field(default_factory=list)


@dataclass
class MetricWithChange:
    value: int
    change_percent: Optional[float]
    formatted_value: str
    yoy_change_percent: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FinancialDetails:
    total_assets: int = 0
    total_equity: int = 0
    total_debt: int = 0
    current_assets: int = 0
    current_liabilities: int = 0
    revenue: int = 0
    operating_profit: int = 0
    net_income: int = 0
    total_shares: int = 0
    ebitda: int = 0
    cash: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FinancialDetails":
        known = {name: int(data.get(name, 0) or 0) for name in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Disclosure:
    report_name: str
    receipt_no: str
    receipt_date: str
    filer_name: str = ""

    @property
    def url(self) -> str:
        return DISCLOSURE_VIEWER_URL.format(receipt_no=self.receipt_no)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["url"] = self.url
        return data


@dataclass
class NewsArticle:
    title: str
    url: str
    published_date: str
    source: str
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StockQuote:
    """Quote and fundamentals snapshot. All-zero means "nothing known"."""

    price: int = 0
    shares_outstanding: int = 0
    dividend_yield: float = 0.0
    per: float = 0.0
    pbr: float = 0.0
    roe: float = 0.0
    eps: float = 0.0
    high_52w: int = 0
    low_52w: int = 0
    operating_margin: float = 0.0
    debt_ratio: float = 0.0
    current_ratio: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProviderResult(Generic[T]):
    """Tagged outcome from an optional enrichment source.

    ``value`` always holds something usable (the sentinel on failure) so
    callers can degrade without branching; ``ok``/``reason`` say why.
    """

    value: T
    ok: bool = True
    reason: Optional[str] = None

    @classmethod
    def failure(cls, value: T, reason: str) -> "ProviderResult[T]":
        return cls(value=value, ok=False, reason=reason)


class DartEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str
    message: str = ""


class DartCompanyPayload(DartEnvelope):
    corp_code: str
    corp_name: str
    stock_code: str = ""
    corp_cls: str = ""
    ceo_nm: str = ""
    induty_code: str = ""
    adres: str = ""


class DartAccountRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_nm: str
    sj_div: str = ""
    thstrm_amount: Optional[str] = None


class DartAccountList(DartEnvelope):
    items: List[DartAccountRow] = Field(default_factory=list, alias="list")


class DartDisclosureRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    report_nm: str
    rcept_no: str
    rcept_dt: str
    flr_nm: str = ""


class DartDisclosureList(DartEnvelope):
    items: List[DartDisclosureRow] = Field(default_factory=list, alias="list")
