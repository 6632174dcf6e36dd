"""
modules/discovery/http.py
---------------------------
Retrying HTTP wrapper shared by the discovery channels.

  2xx          → returned
  429          → wait Retry-After seconds (or the backoff), retry
  5xx          → backoff, retry
  other 4xx    → NonRetryableHTTPError, no retry
  network error→ backoff, retry

Backoff is base_delay_s × 2^attempt. After max_retries the last failure
is raised as DiscoveryError.
"""

from __future__ import annotations
import logging
import time
from typing import Callable, Optional

import requests

import config
from modules.errors import DiscoveryError, NonRetryableHTTPError

logger = logging.getLogger(__name__)


def _retry_after(response: requests.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


def fetch_with_retry(
    method: str,
    url: str,
    *,
    source: str = "upstream",
    max_retries: int = config.DISCOVERY_MAX_RETRIES,
    base_delay_s: float = config.DISCOVERY_BASE_DELAY_S,
    timeout_s: float = config.HTTP_TIMEOUT_S,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> requests.Response:
    last_error: Optional[str] = None

    for attempt in range(max_retries + 1):
        backoff = base_delay_s * (2 ** attempt)
        try:
            response = requests.request(method, url, timeout=timeout_s, **kwargs)
        except requests.RequestException as exc:
            last_error = f"network error: {exc}"
            if attempt < max_retries:
                logger.warning("[%s] network error, retrying in %.1fs (attempt %d/%d): %s",
                               source, backoff, attempt + 1, max_retries, exc)
                sleep(backoff)
            continue

        if response.ok:
            return response

        status = response.status_code
        if status == 429:
            wait = _retry_after(response)
            wait = backoff if wait is None else wait
            last_error = "rate limited (429)"
        elif status >= 500:
            wait = backoff
            last_error = f"server error ({status})"
        else:
            raise NonRetryableHTTPError(status, response.text, source=source)

        if attempt < max_retries:
            logger.warning("[%s] %s, retrying in %.1fs (attempt %d/%d)",
                           source, last_error, wait, attempt + 1, max_retries)
            sleep(wait)

    raise DiscoveryError(f"{source} request failed after {max_retries} retries: {last_error}")
