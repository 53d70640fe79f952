"""
Retry with exponential backoff for Spotify API calls.

Transient failures (connection resets, timeouts, HTTP 429/503 and anything
carrying a Retry-After header) are retried with exponential backoff. A
server-supplied Retry-After always wins over a shorter computed delay.
Everything else propagates on the first failure.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import requests
from pydantic import BaseModel
from spotipy.exceptions import SpotifyException

from tunetriage.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = (429, 503)
RETRY_AFTER_BUFFER_MS = 100


class RetryConfig(BaseModel):
    """
    Retry Configuration

    Attributes:
        max_retries: Total attempts before giving up (including the first)
        initial_delay_ms: Delay before the second attempt
        max_delay_ms: Upper bound for any single delay
        backoff_multiplier: Growth factor between attempts
        should_retry: Optional classifier overriding is_retryable_error
        on_retry: Optional observer called as on_retry(error, attempt, next_delay_ms)
    """
    max_retries: int = 5
    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    backoff_multiplier: float = 2.0
    should_retry: Optional[Callable[[BaseException], bool]] = None
    on_retry: Optional[Callable[[BaseException, int, int], None]] = None


SPOTIFY_RETRY_DEFAULTS: Dict[str, RetryConfig] = {
    # Large paginated reads get a longer, more aggressive backoff
    "saved_tracks": RetryConfig(
        max_retries=5,
        initial_delay_ms=2000,
        max_delay_ms=120000,
        backoff_multiplier=2.5,
    ),
    "default": RetryConfig(
        max_retries=3,
        initial_delay_ms=1000,
        max_delay_ms=30000,
        backoff_multiplier=2.0,
    ),
}


def get_spotify_retry_config(config_settings: Optional[Settings] = None) -> Dict[str, RetryConfig]:
    """
    Retry presets with settings overrides applied.

    An override sets the default preset directly; the saved_tracks preset
    derives from it (double initial delay, four times the max delay, and a
    slightly steeper multiplier capped at 3).
    """
    cfg = config_settings or default_settings
    saved = SPOTIFY_RETRY_DEFAULTS["saved_tracks"].model_copy()
    default = SPOTIFY_RETRY_DEFAULTS["default"].model_copy()

    if cfg.spotify_retry_max_retries is not None:
        default.max_retries = cfg.spotify_retry_max_retries
        saved.max_retries = cfg.spotify_retry_max_retries
    if cfg.spotify_retry_initial_delay_ms is not None:
        default.initial_delay_ms = cfg.spotify_retry_initial_delay_ms
        saved.initial_delay_ms = cfg.spotify_retry_initial_delay_ms * 2
    if cfg.spotify_retry_max_delay_ms is not None:
        default.max_delay_ms = cfg.spotify_retry_max_delay_ms
        saved.max_delay_ms = cfg.spotify_retry_max_delay_ms * 4
    if cfg.spotify_retry_backoff_multiplier is not None:
        default.backoff_multiplier = cfg.spotify_retry_backoff_multiplier
        saved.backoff_multiplier = min(cfg.spotify_retry_backoff_multiplier * 1.25, 3)

    return {"saved_tracks": saved, "default": default}


def _error_headers(error: BaseException) -> Dict[str, Any]:
    headers = getattr(error, "headers", None)
    if not headers:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
    return dict(headers) if headers else {}


def get_retry_after_seconds(error: BaseException) -> Optional[float]:
    """Retry-After value (seconds) carried by an error, if any."""
    for key, value in _error_headers(error).items():
        if str(key).lower() != "retry-after" or value in (None, ""):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparsable Retry-After header: %r", value)
            return None
    return None


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, SpotifyException):
        return error.http_status
    status = getattr(error, "status_code", None) or getattr(error, "http_status", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_timeout_error(error: BaseException) -> bool:
    return isinstance(
        error,
        (
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            ConnectionError,
            TimeoutError,
        ),
    )


def is_rate_limit_error(error: BaseException) -> bool:
    return _status_code(error) == 429 or get_retry_after_seconds(error) is not None


def is_retryable_error(error: BaseException) -> bool:
    """Connection/timeouts, HTTP 429/503, or anything carrying Retry-After."""
    if is_timeout_error(error):
        return True
    if _status_code(error) in RETRYABLE_STATUS_CODES:
        return True
    return get_retry_after_seconds(error) is not None


def compute_delay_ms(attempt: int, config: RetryConfig, error: Optional[BaseException] = None) -> int:
    """Delay before the attempt after `attempt` (1-based)."""
    delay = config.initial_delay_ms * (config.backoff_multiplier ** (attempt - 1))
    if error is not None:
        retry_after = get_retry_after_seconds(error)
        if retry_after is not None:
            delay = max(delay, retry_after * 1000 + RETRY_AFTER_BUFFER_MS)
    return int(min(delay, config.max_delay_ms))


def retry_with_backoff(
    operation: Callable[[], T],
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run operation, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument callable performing the upstream call
        config: Retry configuration (defaults to RetryConfig())
        sleep: Sleep function taking seconds, injectable for tests

    Returns:
        Whatever operation returns

    Raises:
        The last error once retries are exhausted, or the first
        non-retryable error immediately.
    """
    config = config or RetryConfig()
    should_retry = config.should_retry or is_retryable_error
    attempts = max(1, config.max_retries)

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as error:
            if not should_retry(error):
                raise
            if attempt >= attempts:
                logger.error("Failed after %s attempts: %s", attempt, error)
                raise

            next_delay = compute_delay_ms(attempt, config, error)
            if config.on_retry:
                try:
                    config.on_retry(error, attempt, next_delay)
                except Exception as observer_error:
                    logger.warning("Retry observer raised: %s", observer_error)
            sleep(next_delay / 1000)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("retry loop exited without result")


def retry_spotify_call(
    operation: Callable[[], T],
    operation_name: str,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """retry_with_backoff with retry logging classified by failure kind."""
    base = config or SPOTIFY_RETRY_DEFAULTS["default"]
    user_observer = base.on_retry

    def log_retry(error: BaseException, attempt: int, next_delay: int) -> None:
        if is_timeout_error(error):
            logger.warning("%s timed out, retrying attempt %s after %sms", operation_name, attempt, next_delay)
        elif is_rate_limit_error(error):
            logger.warning("%s rate limited, retrying attempt %s after %sms", operation_name, attempt, next_delay)
        else:
            logger.warning("%s failed, retrying attempt %s after %sms: %s", operation_name, attempt, next_delay, error)
        if user_observer:
            user_observer(error, attempt, next_delay)

    return retry_with_backoff(operation, base.model_copy(update={"on_retry": log_retry}), sleep=sleep)
