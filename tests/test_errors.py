from corpview.errors import (
    AppError,
    NotFoundError,
    TransportError,
    UpstreamDataError,
    error_payload,
    error_status,
)


def test_transport_errors_map_to_gateway_statuses():
    network = TransportError("connection reset")
    upstream = TransportError("bad gateway", upstream_status=503)
    client_side = TransportError("forbidden", upstream_status=403)

    assert (network.code, network.status_code, network.retryable) == ("NETWORK_ERROR", 504, True)
    assert (upstream.code, upstream.status_code, upstream.retryable) == ("API_ERROR", 502, True)
    assert client_side.retryable is False
    assert str(upstream) == "bad gateway (HTTP 503)"


def test_upstream_status_codes():
    assert UpstreamDataError("limit", "020").code == "RATE_LIMIT"
    assert UpstreamDataError("none", "013").is_no_data is True
    assert UpstreamDataError("key", "010").status_code == 502


def test_unknown_code_falls_back_to_internal_error():
    assert AppError("SOMETHING_ELSE").code == "INTERNAL_ERROR"


def test_error_payload_hides_unexpected_exceptions():
    payload = error_payload(ValueError("secret detail"))

    assert payload["error"] == "INTERNAL_ERROR"
    assert "secret" not in payload["message"]
    assert error_status(ValueError()) == 500
    assert error_payload(NotFoundError())["code"] == "COMPANY_NOT_FOUND"
    assert error_status(NotFoundError()) == 404
