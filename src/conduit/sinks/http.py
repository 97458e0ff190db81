# src/conduit/sinks/http.py
"""HTTP sink: POSTs each batch as one JSON document.

Request body:
    {"batch_id": "...", "kind": "trace", "envelopes": [{...}, ...]}

Response classification:
    2xx                      -> delivered
    408, 429, 5xx            -> retryable failure
    transport errors         -> retryable failure (connect, read timeout, ...)
    any other status         -> non-retryable rejection (dead-lettered at once)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from conduit.contracts.errors import SinkConfigurationError
from conduit.contracts.sink import DeliveryResult

if TYPE_CHECKING:
    from conduit.contracts.envelope import Batch

logger = structlog.get_logger(__name__)

# Statuses that say "try again later" rather than "this request is wrong"
_RETRYABLE_STATUSES = frozenset({408, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code in _RETRYABLE_STATUSES or status_code >= 500


class HttpSink:
    """Deliver batches to an HTTP endpoint.

    Configuration options:
        endpoint: Target URL, http or https (required)
        headers: Extra request headers, e.g. Authorization (default none)
        timeout: Per-request timeout in seconds (default 10)

    Example configuration:
        sinks:
          - id: jaeger
            plugin: http
            options:
              endpoint: http://localhost:14268/batches
              headers:
                Authorization: Bearer ${COLLECTOR_TOKEN}
    """

    _name = "http"

    def __init__(self) -> None:
        self._endpoint: str | None = None
        self._headers: dict[str, str] = {}
        self._timeout = 10.0
        self._client: httpx.Client | None = None

    @property
    def name(self) -> str:
        return self._name

    def configure(self, options: dict[str, Any]) -> None:
        unknown = sorted(set(options) - {"endpoint", "headers", "timeout"})
        if unknown:
            raise SinkConfigurationError(self._name, f"Unknown option(s): {unknown}")

        endpoint = options.get("endpoint")
        if not isinstance(endpoint, str) or not endpoint:
            raise SinkConfigurationError(self._name, "'endpoint' is required and must be a string")
        try:
            url = httpx.URL(endpoint)
        except httpx.InvalidURL as e:
            raise SinkConfigurationError(self._name, f"Invalid endpoint {endpoint!r}: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise SinkConfigurationError(self._name, f"Endpoint must be an http(s) URL, got {endpoint!r}")

        headers = options.get("headers", {})
        if not isinstance(headers, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in headers.items()):
            raise SinkConfigurationError(self._name, "'headers' must be a mapping of strings to strings")

        timeout = options.get("timeout", 10.0)
        if isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0:
            raise SinkConfigurationError(self._name, f"'timeout' must be a positive number, got {timeout!r}")

        self._endpoint = endpoint
        self._headers = dict(headers)
        self._timeout = float(timeout)
        # httpx.Client is thread-safe; one pooled client per sink
        self._client = httpx.Client(
            timeout=self._timeout,
            headers=self._headers,
            follow_redirects=False,
        )
        # Header values may carry credentials, log the names only
        logger.debug("http_sink_configured", endpoint=endpoint, header_names=sorted(self._headers))

    def deliver(self, batch: Batch) -> DeliveryResult:
        if self._client is None or self._endpoint is None:
            return DeliveryResult.failed("http sink is not configured", retryable=False)

        body = {
            "batch_id": batch.batch_id,
            "kind": batch.kind.value,
            "envelopes": [envelope.to_dict() for envelope in batch],
        }
        try:
            response = self._client.post(self._endpoint, json=body)
        except httpx.TransportError as e:
            return DeliveryResult.failed(f"{type(e).__name__}: {e}")

        if response.is_success:
            return DeliveryResult.ok()

        error = f"HTTP {response.status_code} from {self._endpoint}"
        return DeliveryResult.failed(error, retryable=is_retryable_status(response.status_code))

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
