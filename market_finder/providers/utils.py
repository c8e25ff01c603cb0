"""
Shared utilities for provider modules.
"""
import asyncio
import json
import aiohttp
import logging
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager

from .base import ProviderRateLimitError, ProviderTimeoutError, ProviderUnavailableError

logger = logging.getLogger(__name__)

USER_AGENT = "MarketFinder/1.0"


@asynccontextmanager
async def get_session(session: Optional[aiohttp.ClientSession] = None):
    """Context manager for aiohttp session handling.

    If session is provided, yields it.
    If not, creates a new session and closes it after use.
    """
    if session is not None:
        yield session
    else:
        async with aiohttp.ClientSession(headers={"User-Agent": USER_AGENT}) as new_session:
            yield new_session


async def _read_json(resp, url: str, provider: str) -> Any:
    if resp.status == 429:
        raise ProviderRateLimitError(f"rate limited by {url}", provider, {"status": resp.status})
    if resp.status < 200 or resp.status >= 300:
        text = await resp.text()
        raise ProviderUnavailableError(
            f"HTTP {resp.status} from {url}", provider, {"status": resp.status, "body": text[:200]}
        )
    try:
        return await resp.json(content_type=None)
    except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError) as e:
        raise ProviderUnavailableError(f"non-JSON body from {url}: {e}", provider)


async def http_get_json(
    url: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 15,
    session: Optional[aiohttp.ClientSession] = None,
    provider: str = "http",
) -> Any:
    """
    GET a JSON document, mapping transport failures onto provider errors.

    Args:
        url: The URL to request
        params: Query parameters
        headers: Request headers
        timeout: Total request timeout in seconds
        session: Optional aiohttp session to reuse
        provider: Provider name attached to raised errors

    Returns:
        Parsed JSON response

    Raises:
        ProviderTimeoutError: If the request exceeds `timeout`
        ProviderRateLimitError: On HTTP 429
        ProviderUnavailableError: On connection errors, other non-2xx statuses
            or a body that is not JSON
    """
    try:
        async with get_session(session) as sess:
            async with sess.get(url, params=params, headers=headers,
                                timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
                return await _read_json(resp, url, provider)
    except asyncio.TimeoutError:
        raise ProviderTimeoutError(f"GET {url} timed out after {timeout}s", provider)
    except aiohttp.ClientError as e:
        logger.error(f"HTTP GET {url} failed: {e}")
        raise ProviderUnavailableError(str(e), provider)


async def http_post_json(
    url: str,
    data: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 15,
    session: Optional[aiohttp.ClientSession] = None,
    provider: str = "http",
) -> Any:
    """
    POST a form body and parse the JSON reply. Error mapping matches
    `http_get_json`.
    """
    try:
        async with get_session(session) as sess:
            async with sess.post(url, data=data, headers=headers,
                                 timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
                return await _read_json(resp, url, provider)
    except asyncio.TimeoutError:
        raise ProviderTimeoutError(f"POST {url} timed out after {timeout}s", provider)
    except aiohttp.ClientError as e:
        logger.error(f"HTTP POST {url} failed: {e}")
        raise ProviderUnavailableError(str(e), provider)
