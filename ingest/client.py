"""
ingest/client.py

A minimal REE (Red Eléctrica de España) REData client used by the ingestion
pipeline to fetch electric balance payloads for a date range.

Responsibilities
---------------
- Format range bounds the way the API expects (`YYYY-MM-DDThh:mm`, wall
  clock in the grid's local time zone).
- Perform a single HTTP GET per call with a bounded timeout and a custom
  User-Agent.
- Translate transport and HTTP failures into `BalanceError`s with kind
  REQUEST (4xx), RESPONSE (5xx / unusable body), NETWORK_TIMEOUT or NETWORK.

Notes
-----
- Retrying is deliberately *not* done here; the pipeline owns the retry loop
  so backoff can be injected and tested.
- Endpoint: ``{base_url}/{lang}/datos/balance/balance-electrico``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import requests

from .errors import BalanceError, ErrorKind
from .validate import parse_utc

logger = logging.getLogger(__name__)

BASE_API = "https://apidatos.ree.es"
BALANCE_PATH = "datos/balance/balance-electrico"

# HTTP client settings.
HTTP_TIMEOUT = 10  # seconds
USER_AGENT = "ree-electric-balance/0.1"
SOURCE_TZ = "Europe/Madrid"


def format_api_date(value: Any, tz: str = SOURCE_TZ) -> str:
    """Render a date bound as ``YYYY-MM-DDThh:mm`` in the source time zone.

    Args:
        value: datetime, date, or ISO-8601 string. Naive values are UTC.
        tz: IANA zone whose wall clock the API interprets bounds in.
    """
    dt: datetime = parse_utc(value).astimezone(ZoneInfo(tz))
    return dt.strftime("%Y-%m-%dT%H:%M")


class REEClient:
    """Thin wrapper over the REE balance endpoint.

    Args:
        base_url: API root, without trailing slash.
        lang: Path language segment ("en" yields English group names).
        timeout: Per-request timeout in seconds.
        source_tz: Time zone used to format range bounds.
        user_agent: Value of the User-Agent header.
    """

    def __init__(
        self,
        base_url: str = BASE_API,
        lang: str = "en",
        timeout: float = HTTP_TIMEOUT,
        source_tz: str = SOURCE_TZ,
        user_agent: str = USER_AGENT,
    ):
        self.base_url = base_url.rstrip("/")
        self.lang = lang
        self.timeout = timeout
        self.source_tz = source_tz
        self.user_agent = user_agent

    @classmethod
    def from_settings(cls, settings) -> "REEClient":
        return cls(
            base_url=settings.base_url,
            lang=settings.lang,
            timeout=settings.http_timeout,
            source_tz=settings.source_timezone,
            user_agent=settings.user_agent,
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.lang}/{BALANCE_PATH}"

    def build_params(
        self,
        start: Any,
        end: Any,
        time_scope: str,
        extra_params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "start_date": format_api_date(start, self.source_tz),
            "end_date": format_api_date(end, self.source_tz),
            "time_trunc": time_scope,
        }
        if extra_params:
            params.update(extra_params)
        return params

    def fetch_range(
        self,
        start: Any,
        end: Any,
        time_scope: str = "day",
        extra_params: Mapping[str, Any] | None = None,
    ) -> dict:
        """Fetch the balance payload for ``[start, end]`` at ``time_scope``.

        Returns:
            The parsed JSON body.

        Raises:
            BalanceError: REQUEST for 4xx, RESPONSE for 5xx or an empty /
                non-JSON body, NETWORK_TIMEOUT or NETWORK for transport errors.
        """
        params = self.build_params(start, end, time_scope, extra_params)
        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        context = {"url": self.url, "params": params}

        logger.info(
            "Fetching REE balance %s -> %s (%s)",
            params["start_date"],
            params["end_date"],
            time_scope,
        )
        try:
            r = requests.get(self.url, params=params, headers=headers, timeout=self.timeout)
            r.raise_for_status()
        except requests.Timeout as e:
            raise BalanceError(
                ErrorKind.NETWORK_TIMEOUT,
                f"Timeout calling REE API: {e}",
                is_timeout=True,
                cause=e,
                details=context,
            ) from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            kind = ErrorKind.RESPONSE if status is None or status >= 500 else ErrorKind.REQUEST
            raise BalanceError(
                kind,
                f"REE API returned HTTP {status}: {e}",
                status_code=status,
                cause=e,
                details=context,
            ) from e
        except requests.RequestException as e:
            raise BalanceError(
                ErrorKind.NETWORK,
                f"Network error calling REE API: {e}",
                cause=e,
                details=context,
            ) from e

        try:
            body = r.json()
        except ValueError as e:
            raise BalanceError(
                ErrorKind.RESPONSE,
                "REE API returned a non-JSON body",
                status_code=r.status_code,
                cause=e,
                details=context,
            ) from e
        if not body:
            raise BalanceError(
                ErrorKind.RESPONSE,
                "Empty response from REE API",
                status_code=r.status_code,
                details=context,
            )
        return body
