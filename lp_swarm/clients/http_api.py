"""
Blocking requests calls, run off the event loop and mapped onto the error taxonomy.
"""

import asyncio
from typing import Any, Dict, Optional

import requests

from ..errors import InvalidParamsError, NetworkError, RateLimitedError
from ..retry import API_POLICY, RetryPolicy, retry_async


def _get_json(url: str, params: Optional[Dict[str, Any]] = None,
              headers: Optional[Dict[str, str]] = None, timeout: float = 30) -> Dict[str, Any]:
    response = requests.get(url, params=params, headers=headers, timeout=timeout)

    if response.status_code == 200:
        return response.json()

    error_text = response.text[:300] if response.text else "Unknown error"
    if response.status_code == 429:
        raise RateLimitedError(f"{url} rate limited: {error_text}")
    if response.status_code >= 500:
        raise NetworkError(f"{url} returned {response.status_code}: {error_text}")
    raise InvalidParamsError(
        f"{url} rejected the request ({response.status_code}): {error_text}",
        context={"status_code": response.status_code},
    )


async def get_json(url: str, params: Optional[Dict[str, Any]] = None,
                   headers: Optional[Dict[str, str]] = None, timeout: float = 30,
                   policy: RetryPolicy = API_POLICY, label: str = "http") -> Dict[str, Any]:
    return await retry_async(
        lambda: asyncio.to_thread(_get_json, url, params, headers, timeout),
        policy,
        label=label,
    )
