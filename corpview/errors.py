"""Error taxonomy shared by the registry client, the service layer and the routes."""

import logging
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

ERROR_MESSAGES = {
    "COMPANY_NOT_FOUND": "회사를 찾을 수 없습니다.",
    "API_ERROR": "API 요청 중 오류가 발생했습니다. 잠시 후 다시 시도해주세요.",
    "NETWORK_ERROR": "네트워크 연결을 확인해주세요.",
    "INVALID_QUERY": "검색어를 입력해주세요.",
    "DATA_UNAVAILABLE": "데이터를 불러올 수 없습니다.",
    "CALCULATION_ERROR": "재무비율 계산 중 오류가 발생했습니다.",
    "RATE_LIMIT": "API 요청 한도를 초과했습니다. 잠시 후 다시 시도해주세요.",
    "INTERNAL_ERROR": "서버 오류가 발생했습니다. 잠시 후 다시 시도해주세요.",
    "VALIDATION_ERROR": "입력값이 올바르지 않습니다.",
    "NOT_FOUND": "요청하신 리소스를 찾을 수 없습니다.",
}

# DART status codes with a meaning beyond "request failed".
DART_NO_DATA = "013"
DART_RATE_LIMIT = "020"


class AppError(Exception):
    def __init__(self, code: str, status_code: int = 500, details: Optional[Any] = None) -> None:
        if code not in ERROR_MESSAGES:
            code = "INTERNAL_ERROR"
        super().__init__(ERROR_MESSAGES[code])
        self.code = code
        self.status_code = status_code
        self.details = details

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self.code]

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "code": self.code}


class TransportError(AppError):
    """The collaborator could not be reached or answered with a non-2xx status."""

    def __init__(self, reason: str, upstream_status: Optional[int] = None) -> None:
        code = "NETWORK_ERROR" if upstream_status is None else "API_ERROR"
        status_code = 504 if upstream_status is None else 502
        super().__init__(code, status_code, details=reason)
        self.reason = reason
        self.upstream_status = upstream_status

    @property
    def retryable(self) -> bool:
        if self.upstream_status is None:
            return True
        return not 400 <= self.upstream_status < 500

    def __str__(self) -> str:
        if self.upstream_status is None:
            return self.reason
        return f"{self.reason} (HTTP {self.upstream_status})"


class UpstreamDataError(AppError):
    """The collaborator replied but signalled an application-level failure."""

    def __init__(self, reason: str, upstream_code: Optional[str] = None) -> None:
        if upstream_code == DART_RATE_LIMIT:
            super().__init__("RATE_LIMIT", 429, details=reason)
        else:
            super().__init__("API_ERROR", 502, details=reason)
        self.reason = reason
        self.upstream_code = upstream_code

    @property
    def is_no_data(self) -> bool:
        return self.upstream_code == DART_NO_DATA

    def __str__(self) -> str:
        if self.upstream_code:
            return f"{self.reason} (status {self.upstream_code})"
        return self.reason


class NotFoundError(AppError):
    def __init__(self, details: Optional[Any] = None) -> None:
        super().__init__("COMPANY_NOT_FOUND", 404, details=details)


def error_payload(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, AppError):
        return exc.to_response()
    logger.error("Unhandled error: %s", exc, exc_info=exc)
    return {
        "error": "INTERNAL_ERROR",
        "message": ERROR_MESSAGES["INTERNAL_ERROR"],
        "code": "INTERNAL_ERROR",
    }


def error_status(exc: BaseException) -> int:
    if isinstance(exc, AppError):
        return exc.status_code
    return 500
