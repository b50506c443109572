"""
InfluxDB write client for flushing batches of canonical MetricPoints.

Encodes points as InfluxDB line protocol and POSTs them to the ``/write``
endpoint (v1 API, also served by InfluxDB 2.x's compatibility layer).  Reuses
one pooled httpx.AsyncClient for all writes.  Classifies failures so the
write buffer can apply the right retry policy:

- 2xx: success.
- 408, 429, 5xx, connection errors, timeouts: SinkTransientError (retry).
- Any other 4xx: SinkRejectedError (malformed batch, never retried).

Operations:
- write(points): Encode and POST one batch.
- close(): Close the underlying HTTP client.

CHANGELOG:
- 2026-10-05: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from collector.src.errors import SinkRejectedError, SinkTransientError
from collector.src.models import MetricPoint

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 10.0
_TRANSIENT_STATUS = frozenset({408, 429})
_PRECISION_DIVISORS = {"s": 1, "ms": 1_000, "us": 1_000_000, "ns": 1_000_000_000}

# ---------------------------------------------------------------------------
# Line protocol encoding
# ---------------------------------------------------------------------------

_MEASUREMENT_ESCAPES = str.maketrans({",": r"\,", " ": r"\ "})
_TAG_ESCAPES = str.maketrans({",": r"\,", "=": r"\=", " ": r"\ "})


def _format_field(value: float) -> str:
    # Always write floats so a reading of 0 never creates an integer field.
    return repr(float(value))


def _timestamp(point: MetricPoint, precision: str) -> int:
    ts = point.timestamp
    seconds = int(ts.timestamp())
    micros = ts.microsecond
    multiplier = _PRECISION_DIVISORS[precision]
    return seconds * multiplier + (micros * multiplier) // 1_000_000


def encode_point(point: MetricPoint, precision: str = "ms") -> str:
    """Encode one MetricPoint as a line protocol line (no trailing newline).

    Tags are written in their stored order; field values are always floats.
    """
    parts = [point.measurement.translate(_MEASUREMENT_ESCAPES)]
    for key, value in point.tags.items():
        if value == "":
            continue
        parts.append(f"{key.translate(_TAG_ESCAPES)}={value.translate(_TAG_ESCAPES)}")
    series = ",".join(parts)
    fields = ",".join(
        f"{name.translate(_TAG_ESCAPES)}={_format_field(value)}"
        for name, value in point.fields.items()
    )
    return f"{series} {fields} {_timestamp(point, precision)}"


def encode_batch(points: Sequence[MetricPoint], precision: str = "ms") -> str:
    """Encode a batch as newline-separated line protocol."""
    return "\n".join(encode_point(p, precision) for p in points)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class InfluxSink:
    """Thin InfluxDB write API client.

    Args:
        url: InfluxDB base URL, e.g. ``http://localhost:8086``.
        database: Target database (or DBRP-mapped bucket on InfluxDB 2.x).
        token: Optional API token, sent as ``Authorization: Token <token>``.
        timeout_s: Timeout for one write request in seconds.
        precision: Timestamp precision; one of ``s``, ``ms``, ``us``, ``ns``.
        client: Optional pre-built httpx.AsyncClient (tests inject one).

    Raises:
        ValueError: If *url* is not an http(s) URL or *precision* is unknown.

    Usage::

        sink = InfluxSink(url="http://localhost:8086", database="shelly_data")
        await sink.write(points)
        await sink.close()
    """

    def __init__(
        self,
        url: str,
        database: str,
        *,
        token: str = "",
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        precision: str = "ms",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url.lower().startswith(("http://", "https://")):
            raise ValueError(f"InfluxDB URL must be http(s) (got: '{url}').")
        if precision not in _PRECISION_DIVISORS:
            raise ValueError(f"Unsupported precision '{precision}'.")
        self._write_url = f"{url.rstrip('/')}/write"
        self._params = {"db": database, "precision": precision}
        self._precision = precision
        self._headers = {"Content-Type": "text/plain; charset=utf-8"}
        if token:
            self._headers["Authorization"] = f"Token {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))

    async def close(self) -> None:
        """Close the HTTP client if the sink created it."""
        if self._owns_client:
            await self._client.aclose()

    async def write(self, points: Sequence[MetricPoint]) -> None:
        """Write one batch of points.

        Raises:
            SinkTransientError: The sink is temporarily unavailable.
            SinkRejectedError: The sink rejected the batch as invalid.
        """
        if not points:
            return

        body = encode_batch(points, self._precision)
        try:
            response = await self._client.post(
                self._write_url,
                params=self._params,
                content=body.encode("utf-8"),
                headers=self._headers,
            )
        except (httpx.TransportError, httpx.TimeoutException) as exc:
            raise SinkTransientError(f"network error: {exc!r}") from exc

        status = response.status_code
        if 200 <= status < 300:
            logger.debug("Wrote %d points to InfluxDB", len(points))
            return

        detail = response.text[:200]
        if status in _TRANSIENT_STATUS or status >= 500:
            raise SinkTransientError(f"HTTP {status}: {detail}", status_code=status)
        raise SinkRejectedError(f"HTTP {status}: {detail}", status_code=status)
