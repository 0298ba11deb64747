"""
Chat-completion client for extraction and sleep-cycle judgements.

Talks to any OpenAI-compatible endpoint (OpenRouter by default) through
``AsyncOpenAI``. Transient failures are retried with exponential backoff;
permanent ones are raised immediately.
"""

import asyncio
import logging
import re
from typing import Dict, List, Optional, Tuple

import httpx
import openai
from openai import AsyncOpenAI

from ..config import ExtractionConfig
from ..exceptions import LLMError

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = 0.5  # seconds
TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})

_TRANSIENT_MESSAGE = re.compile(
    r"timeout|timed out|ECONNREFUSED|ECONNRESET|ETIMEDOUT|ENOTFOUND"
    r"|error (?:429|502|503|504)\b|network error|fetch failed|socket hang up",
    re.IGNORECASE,
)

_clients: Dict[Tuple[str, str, float], AsyncOpenAI] = {}


def is_transient_error(err: object) -> bool:
    """
    Classify an LLM-call failure as worth retrying.

    Timeouts, cancellation, connection failures, rate limits and gateway
    errors (502/503/504) are transient. HTTP 500, malformed responses and
    everything else are permanent.
    """
    if not isinstance(err, BaseException):
        return False
    if isinstance(err, (asyncio.TimeoutError, asyncio.CancelledError, TimeoutError)):
        return True
    if isinstance(err, LLMError):
        return err.transient
    if isinstance(err, (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError)):
        return True
    if isinstance(err, openai.APIStatusError):
        return err.status_code in TRANSIENT_STATUS_CODES
    if isinstance(err, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    return bool(_TRANSIENT_MESSAGE.search(str(err)))


def _get_client(config: ExtractionConfig) -> AsyncOpenAI:
    """One client per endpoint; retries are handled here, not by the SDK."""
    key = (config.base_url, config.api_key, config.timeout)
    client = _clients.get(key)
    if client is None:
        client = AsyncOpenAI(
            api_key=config.api_key or "not-needed",
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=0,
        )
        _clients[key] = client
    return client


async def _with_abort(coro, abort: Optional[asyncio.Event]):
    if abort is None:
        return await coro
    if abort.is_set():
        coro.close()
        raise LLMError("LLM call aborted", transient=True)
    call = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if call not in done:
        call.cancel()
        raise LLMError("LLM call aborted", transient=True)
    return call.result()


async def call_llm(
    config: ExtractionConfig,
    messages: List[Dict[str, str]],
    abort: Optional[asyncio.Event] = None,
) -> Optional[str]:
    """
    Run a JSON-mode chat completion and return the message content.

    Args:
        config: Resolved extraction config (model, endpoint, retries)
        messages: OpenAI-format chat messages
        abort: When set, the in-flight call is cancelled

    Returns:
        The assistant message content, or None when the response had none

    Raises:
        Exception: The last error once retries are exhausted or the error is permanent
    """
    client = _get_client(config)
    attempt = 0
    while True:
        try:
            response = await _with_abort(
                client.chat.completions.create(
                    model=config.model,
                    messages=messages,
                    temperature=config.temperature,
                    response_format={"type": "json_object"},
                ),
                abort,
            )
            if not response.choices:
                return None
            return response.choices[0].message.content
        except Exception as e:
            if abort is not None and abort.is_set():
                raise
            if not is_transient_error(e) or attempt >= config.max_retries:
                raise
            delay = RETRY_BASE_DELAY * (2 ** attempt)
            logger.warning(f"Transient LLM error, retrying ({attempt + 1}/{config.max_retries}): {e}")
            await asyncio.sleep(delay)
            attempt += 1
