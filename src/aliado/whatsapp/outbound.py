"""Outbound WhatsApp messaging via Evolution API.

Security: NEVER log to_ref or text. Only log hashes and lengths.

Evolution deployments disagree on how the API key is presented, so each
send walks AUTH_SCHEMES in order and only moves on when the provider
answers 401/403. Network errors and 5xx are retried once per scheme.
"""

import json
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from aliado.infra.config import get_evolution_config
from aliado.observability.logging import get_logger
from aliado.observability.redaction import hash_identifier, safe_log_context

from .errors import ProviderSendError, ProviderTimeoutError

logger = get_logger(__name__)

# Retry config (per auth scheme)
MAX_RETRIES = 1
RETRY_DELAY = 0.2

AUTH_SCHEMES = ("apikey_header", "bearer", "x_api_key", "apikey_query")

_AUTH_REJECTED = {401, 403}


def _build_request_parts(
    scheme: str, url: str, api_key: str
) -> tuple[str, dict[str, str]]:
    """Apply one authentication scheme. Returns (url, headers)."""
    headers = {"Content-Type": "application/json"}
    if scheme == "apikey_header":
        headers["apikey"] = api_key
    elif scheme == "bearer":
        headers["Authorization"] = f"Bearer {api_key}"
    elif scheme == "x_api_key":
        headers["X-API-Key"] = api_key
    elif scheme == "apikey_query":
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}apikey={urllib.parse.quote(api_key, safe='')}"
    else:
        raise ValueError(f"unknown auth scheme: {scheme}")
    return url, headers


def _do_request(
    url: str, data: bytes, headers: dict[str, str], timeout: float
) -> dict[str, Any]:
    """Execute HTTP POST request. Raises on error."""
    req = urllib.request.Request(url, data=data, headers=headers, method="POST")
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        body = resp.read().decode()
    if not body:
        return {}
    parsed = json.loads(body)
    return parsed if isinstance(parsed, dict) else {"data": parsed}


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, socket.timeout)):
        return True
    reason = getattr(error, "reason", None)
    return isinstance(reason, (TimeoutError, socket.timeout))


def extract_provider_message_id(response: dict[str, Any]) -> str | None:
    """Provider message id from a sendText response (key.id, messageId or id)."""
    key = response.get("key")
    if isinstance(key, dict) and isinstance(key.get("id"), str):
        return key["id"]
    for field in ("messageId", "id"):
        value = response.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def send_text_via_evolution(
    *,
    to_ref: str,
    text: str,
    instance: str | None = None,
    correlation_id: str | None = None,
) -> str | None:
    """Send text message via Evolution API.

    Args:
        to_ref: Recipient JID ("<digits>@s.whatsapp.net"). NEVER logged.
        text: Message text. NEVER logged.
        instance: Evolution instance name (default: EVOLUTION_INSTANCE).
        correlation_id: Optional correlation ID for tracing.

    Returns:
        Provider message id when the response carries one.

    Raises:
        ConfigurationError: If config is missing.
        ProviderTimeoutError: Provider did not answer in time (retryable).
        ProviderSendError: Rejected by every auth scheme, or a definitive
            4xx / persistent network failure.
    """
    config = get_evolution_config(instance)

    instance_path = urllib.parse.quote(config.instance, safe="")
    base_url = f"{config.base_url}/message/sendText/{instance_path}"

    payload = {"number": to_ref, "text": text}
    data = json.dumps(payload).encode("utf-8")

    # Safe logging context - NEVER include to_ref or text
    log_ctx = safe_log_context(
        correlationId=correlation_id or "",
        to_hash=hash_identifier(to_ref),
        text_len=len(text),
    )

    logger.info("sending outbound message", extra={"extra_fields": log_ctx})

    last_status: int | None = None

    for scheme in AUTH_SCHEMES:
        url, headers = _build_request_parts(scheme, base_url, config.api_key)

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = _do_request(url, data, headers, config.timeout)
            except urllib.error.HTTPError as e:
                last_status = e.code
                if e.code in _AUTH_REJECTED:
                    logger.warning(
                        "outbound auth scheme rejected, trying next",
                        extra={
                            "extra_fields": safe_log_context(
                                **log_ctx, auth_scheme=scheme, status=e.code
                            )
                        },
                    )
                    break
                if 500 <= e.code < 600 and attempt < MAX_RETRIES:
                    logger.warning(
                        "outbound send failed, retrying",
                        extra={
                            "extra_fields": safe_log_context(
                                **log_ctx, attempt=attempt, status=e.code
                            )
                        },
                    )
                    time.sleep(RETRY_DELAY)
                    continue
                logger.error(
                    "outbound send rejected",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, auth_scheme=scheme, status=e.code
                        )
                    },
                )
                raise ProviderSendError(
                    f"provider rejected message (HTTP {e.code})", status_code=e.code
                ) from e
            except (urllib.error.URLError, TimeoutError, socket.timeout) as e:
                if attempt < MAX_RETRIES:
                    logger.warning(
                        "outbound send failed, retrying",
                        extra={
                            "extra_fields": safe_log_context(
                                **log_ctx, attempt=attempt, error_type=type(e).__name__
                            )
                        },
                    )
                    time.sleep(RETRY_DELAY)
                    continue
                logger.error(
                    "outbound send failed",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, attempt=attempt, error_type=type(e).__name__
                        )
                    },
                )
                if _is_timeout(e):
                    raise ProviderTimeoutError("provider timed out") from e
                raise ProviderSendError("provider unreachable") from e
            except ValueError:
                # 2xx with a non-JSON body: the message went out
                logger.warning(
                    "outbound response not json",
                    extra={"extra_fields": safe_log_context(**log_ctx, auth_scheme=scheme)},
                )
                return None

            provider_id = extract_provider_message_id(response)
            logger.info(
                "outbound message sent",
                extra={
                    "extra_fields": safe_log_context(
                        **log_ctx, attempt=attempt, auth_scheme=scheme
                    )
                },
            )
            return provider_id

    logger.error(
        "outbound send failed, all auth schemes rejected",
        extra={"extra_fields": safe_log_context(**log_ctx, status=last_status)},
    )
    raise ProviderSendError(
        "provider rejected every authentication scheme", status_code=last_status
    )
