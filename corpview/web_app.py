import hashlib
import json
import logging
import re
import time
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .cache import CacheManager
from .config import AppConfig, load_config
from .dart_client import DartClient
from .errors import AppError, error_payload, error_status
from .kv_store import SQLiteKVStore
from .news_client import NewsClient
from .quote_client import QuoteClient
from .run_logger import REQUEST_ID, configure_logging, log_event, new_request_id
from .service import CompanyService, ServiceResponse


logger = logging.getLogger(__name__)

CORP_CODE_PATTERN = re.compile(r"^\d{8}$")


def build_service(config: Optional[AppConfig] = None) -> CompanyService:
    config = config or load_config()
    store = None
    if config.cache_enabled and config.cache_db_path:
        store = SQLiteKVStore(config.cache_db_path)
    dart = DartClient(
        api_key=config.dart_api_key,
        base_url=config.dart_base_url,
        timeout=config.http_timeout_seconds,
        max_retries=config.http_max_retries,
        base_delay=config.http_retry_base_delay,
    )
    return CompanyService(
        dart=dart,
        quotes=QuoteClient(timeout=config.http_timeout_seconds),
        news=NewsClient(timeout=config.http_timeout_seconds),
        cache=CacheManager(store=store, fetch_timeout=config.cache_fetch_timeout_seconds),
    )


def etag_for(data) -> str:
    body = json.dumps(data, ensure_ascii=False, sort_keys=True, default=str)
    return '"' + hashlib.sha1(body.encode("utf-8")).hexdigest()[:16] + '"'


def cached_json(request: Request, result: ServiceResponse) -> Response:
    etag = etag_for(result.data)
    headers = {"ETag": etag, "X-Cache-Status": result.cache_status}
    if result.max_age:
        cache_control = f"public, max-age={result.max_age}"
        if result.stale_while_revalidate:
            cache_control += f", stale-while-revalidate={result.stale_while_revalidate}"
        headers["Cache-Control"] = cache_control
    if request.headers.get("if-none-match") == etag:
        return Response(status_code=304, headers=headers)
    return JSONResponse(result.data, headers=headers)


def _check_corp_code(corp_code: str) -> None:
    if not CORP_CODE_PATTERN.match(corp_code):
        raise AppError("VALIDATION_ERROR", 400, details={"corp_code": corp_code})


def create_app(service: Optional[CompanyService] = None) -> FastAPI:
    app = FastAPI(title="CorpView")

    if service is None:
        config = load_config()
        configure_logging(config.log_level, config.log_file or None)
        service = build_service(config)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "X-Cache-Status", "X-Request-ID"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or new_request_id()
        token = REQUEST_ID.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            log_event(
                logger,
                "http.request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
            )
            return response
        finally:
            REQUEST_ID.reset(token)

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        log_event(logger, "http.app_error", level, path=request.url.path, code=exc.code, error=str(exc))
        return JSONResponse(error_payload(exc), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(AppError("VALIDATION_ERROR", 400).to_response(), status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(AppError("NOT_FOUND", 404).to_response(), status_code=404)
        payload = {"error": "HTTP_ERROR", "message": str(exc.detail), "code": "HTTP_ERROR"}
        return JSONResponse(payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        return JSONResponse(error_payload(exc), status_code=error_status(exc))

    @app.get("/health")
    def health():
        return app.state.service.health()

    @app.get("/api/companies/search")
    async def search_companies(request: Request, q: str = "", limit: int = Query(10, ge=1, le=50)):
        result = await app.state.service.search_companies(q, limit)
        return cached_json(request, result)

    @app.get("/api/companies/{corp_code}")
    async def company_details(request: Request, corp_code: str):
        _check_corp_code(corp_code)
        return cached_json(request, await app.state.service.get_company_details(corp_code))

    @app.get("/api/companies/{corp_code}/financial")
    async def financial_performance(request: Request, corp_code: str):
        _check_corp_code(corp_code)
        return cached_json(request, await app.state.service.get_financial_performance(corp_code))

    @app.get("/api/companies/{corp_code}/ratios")
    async def ratios(request: Request, corp_code: str):
        _check_corp_code(corp_code)
        return cached_json(request, await app.state.service.get_ratios(corp_code))

    @app.get("/api/companies/{corp_code}/disclosures")
    async def disclosures(request: Request, corp_code: str):
        _check_corp_code(corp_code)
        return cached_json(request, await app.state.service.get_disclosures(corp_code))

    @app.get("/api/companies/{corp_code}/news")
    async def news(request: Request, corp_code: str):
        _check_corp_code(corp_code)
        return cached_json(request, await app.state.service.get_news(corp_code))

    return app
