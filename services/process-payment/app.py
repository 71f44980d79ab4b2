"""
Lambda handler for POST /process-payment.

Flow:
1. Parse the API Gateway event (CORS preflight, method, body size, per-client rate limit).
2. Normalize the payload: field aliases, amount bounds, currency, source token.
3. Guard the idempotency key (generate when absent, dedupe through DynamoDB when configured).
4. Charge the tokenized source through the Square Payments API.
5. Map the outcome onto the JSON envelope returned to the caller.

Nothing raises past ``lambda_handler``; every failure is returned as
``{"success": false, "error": {"message": ..., "code": ...}}``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import re
import secrets
import string
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Union

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from requests.adapters import HTTPAdapter
from urllib3.exceptions import InvalidHeader
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)
logger.setLevel(getattr(logging, os.environ.get("LOG_LEVEL", "INFO").strip().upper(), logging.INFO))

PRODUCTION_API_BASE_URL = "https://connect.squareup.com"
SANDBOX_API_BASE_URL = "https://connect.squareupsandbox.com"
VALID_ENVIRONMENTS = ("production", "sandbox")
DEFAULT_ENVIRONMENT = "production"
DEFAULT_API_VERSION = "2024-10-16"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
DEFAULT_MAX_UPSTREAM_RETRIES = 2
MAX_UPSTREAM_RETRIES = 5
RETRYABLE_UPSTREAM_STATUSES = frozenset({429, 502, 503, 504})
RETRY_BACKOFF_SECONDS = 0.5
MAX_RETRY_AFTER_SECONDS = 5

DEFAULT_CURRENCY = "USD"
DEFAULT_MIN_AMOUNT = Decimal("0.01")
DEFAULT_MAX_AMOUNT = Decimal("10000")
CENTS_PER_UNIT = Decimal("100")
SOURCE_TOKEN_MIN_LENGTH = 10
CURRENCY_PATTERN = re.compile(r"^[A-Za-z]{3}$")

IDEMPOTENCY_KEY_MIN_LENGTH = 20
IDEMPOTENCY_KEY_MAX_LENGTH = 128
GENERATED_KEY_ALPHABET = string.ascii_lowercase + string.digits
GENERATED_KEY_SUFFIX_LENGTH = 9
DEFAULT_IDEMPOTENCY_TTL_SECONDS = 3600
IDEMPOTENCY_CLAIM_CONDITION = "attribute_not_exists(idempotency_key) OR expires_at <= :now"

NOTE_FORBIDDEN_PATTERN = re.compile(r"[:\n\r\t]")
NOTE_VALUE_MAX_LENGTH = 50

DEFAULT_REQUESTS_PER_MINUTE = 10
DEFAULT_HOURLY_LIMIT = Decimal("50000")
DEFAULT_DAILY_LIMIT = Decimal("100000")
REQUEST_COUNTER_CONDITION = "attribute_not_exists(hits) OR hits < :limit"
SPEND_COUNTER_CONDITION = "attribute_not_exists(total_cents) OR total_cents <= :remaining"

DEFAULT_MAX_BODY_BYTES = 10 * 1024
LOG_TRUNCATE_LENGTH = 200

ACCESS_TOKEN_ENV = "SQUARE_ACCESS_TOKEN"
ACCESS_TOKEN_SECRET_ENV = "SQUARE_ACCESS_TOKEN_SECRET_ID"
LOCATION_ID_ENV = "SQUARE_LOCATION_ID"
ENVIRONMENT_ENV = "SQUARE_ENVIRONMENT"
API_BASE_URL_ENV = "SQUARE_API_BASE_URL"
API_VERSION_ENV = "SQUARE_API_VERSION"
REQUEST_TIMEOUT_ENV = "PAYMENT_REQUEST_TIMEOUT_SECONDS"
MAX_UPSTREAM_RETRIES_ENV = "PAYMENT_MAX_UPSTREAM_RETRIES"
MIN_AMOUNT_ENV = "PAYMENT_MIN_AMOUNT"
MAX_AMOUNT_ENV = "PAYMENT_MAX_AMOUNT"
IDEMPOTENCY_TABLE_ENV = "PAYMENT_IDEMPOTENCY_TABLE_NAME"
IDEMPOTENCY_TTL_ENV = "PAYMENT_IDEMPOTENCY_TTL_SECONDS"
STRICT_IDEMPOTENCY_ENV = "PAYMENT_STRICT_IDEMPOTENCY_KEYS"
HARDENED_ERRORS_ENV = "PAYMENT_HARDENED_ERRORS"
RATE_LIMIT_TABLE_ENV = "PAYMENT_RATE_LIMIT_TABLE_NAME"
REQUESTS_PER_MINUTE_ENV = "PAYMENT_RATE_LIMIT_PER_MINUTE"
HOURLY_LIMIT_ENV = "PAYMENT_HOURLY_LIMIT"
DAILY_LIMIT_ENV = "PAYMENT_DAILY_LIMIT"
ALLOWED_ORIGINS_ENV = "PAYMENT_ALLOWED_ORIGINS"
MAX_BODY_BYTES_ENV = "PAYMENT_MAX_BODY_BYTES"

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "amount": ("amount", "amount_usd", "amountUsd"),
    "currency": ("currency", "currency_code", "currencyCode"),
    "source_token": ("source_id", "sourceId", "token"),
    "idempotency_key": ("idempotency_key", "idempotencyKey", "orderId"),
    "risk_profile": ("risk_profile", "riskProfile"),
}

SENSITIVE_LOG_KEYS = frozenset(
    key.lower()
    for key in (
        "source_id",
        "sourceId",
        "token",
        "card",
        "cvv",
        "verification_token",
        "card_number",
        "cardholder_name",
        "email",
        "user_email",
        "wallet_address",
        "phone",
        "address",
        "billing_address",
        "shipping_address",
        "access_token",
        "location_id",
        "authorization",
    )
)

# Failure kinds.
VALIDATION = "validation"
CONFIGURATION = "configuration"
IDEMPOTENCY = "idempotency"
DUPLICATE = "duplicate"
UPSTREAM_REJECTED = "upstream_rejected"
UPSTREAM_UNREACHABLE = "upstream_unreachable"
UPSTREAM_TIMEOUT = "upstream_timeout"
UPSTREAM_TRANSPORT = "upstream_transport"
INVALID_RESPONSE = "invalid_response"
RATE_LIMITED = "rate_limited"
METHOD_NOT_ALLOWED = "method_not_allowed"
PAYLOAD_TOO_LARGE = "payload_too_large"
INTERNAL = "internal"

FAILURE_STATUS_CODES = {
    VALIDATION: 400,
    CONFIGURATION: 500,
    IDEMPOTENCY: 400,
    DUPLICATE: 409,
    UPSTREAM_UNREACHABLE: 503,
    UPSTREAM_TIMEOUT: 504,
    UPSTREAM_TRANSPORT: 500,
    INVALID_RESPONSE: 500,
    RATE_LIMITED: 429,
    METHOD_NOT_ALLOWED: 405,
    PAYLOAD_TOO_LARGE: 413,
    INTERNAL: 500,
}

# Failures caused by the caller's own input keep their specific message in hardened mode.
CLIENT_FAILURE_KINDS = frozenset(
    {VALIDATION, IDEMPOTENCY, DUPLICATE, RATE_LIMITED, METHOD_NOT_ALLOWED, PAYLOAD_TOO_LARGE}
)

GENERIC_MESSAGES = {
    402: "Payment was declined",
    500: "Payment service temporarily unavailable",
    502: "Payment service temporarily unavailable",
    503: "Payment service temporarily unavailable",
    504: "Payment service timeout",
}
GENERIC_UPSTREAM_REJECTION_MESSAGE = "Payment processing failed"

DECLINED_PAYMENT_STATUSES = frozenset({"FAILED", "CANCELED"})

FALLBACK_ERROR_BODY = (
    '{"success": false, "error": {"message": "Payment service temporarily unavailable", '
    '"code": "INTERNAL_ERROR"}}'
)


class BadRequestError(ValueError):
    """Raised when the inbound event cannot be decoded."""


class ConfigurationError(RuntimeError):
    """Raised when the process environment is missing or malformed."""


@dataclass(frozen=True)
class PaymentConfig:
    access_token: str
    access_token_secret_id: str
    location_id: str
    environment: str
    api_base_url: str
    api_version: str
    request_timeout_seconds: float
    max_upstream_retries: int
    min_amount: Decimal
    max_amount: Decimal
    idempotency_table_name: str | None
    idempotency_ttl_seconds: int
    strict_idempotency_keys: bool
    hardened_errors: bool
    rate_limit_table_name: str | None
    requests_per_minute: int
    hourly_limit: Decimal
    daily_limit: Decimal
    allowed_origins: tuple[str, ...]
    max_body_bytes: int

    @property
    def credentials_configured(self) -> bool:
        return bool((self.access_token or self.access_token_secret_id) and self.location_id)


@dataclass(frozen=True)
class PaymentRequest:
    amount: Decimal
    amount_cents: int
    currency: str
    source_token: str = field(repr=False)
    idempotency_key: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class UpstreamPaymentResult:
    success: bool
    payment_id: str | None
    status: str | None
    order_id: str | None
    amount_money: dict[str, Any]


@dataclass(frozen=True)
class Failure:
    kind: str
    message: str
    code: str
    status_code: int | None = None
    detail: str | None = None


PaymentOutcome = Union[UpstreamPaymentResult, Failure]

_CONFIG: PaymentConfig | None = None
_ACCESS_TOKEN_CACHE: str | None = None
_UPSTREAM_SESSION: requests.Session | None = None
_DYNAMODB_RESOURCE: Any | None = None


def _env_str(name: str, default: str = "") -> str:
    return str(os.environ.get(name, default) or "").strip()


def configured_environment() -> str:
    """Return the lower-cased ``SQUARE_ENVIRONMENT`` value without validating it."""
    return (_env_str(ENVIRONMENT_ENV) or DEFAULT_ENVIRONMENT).lower()


def _read_int_env(name: str, default: int, minimum: int = 1, maximum: int | None = None) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}")
    if maximum is not None and parsed > maximum:
        raise ConfigurationError(f"{name} must be <= {maximum}")
    return parsed


def _read_decimal_env(name: str, default: Decimal) -> Decimal:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        parsed = Decimal(raw)
    except InvalidOperation as exc:
        raise ConfigurationError(f"{name} must be numeric") from exc
    if not parsed.is_finite() or parsed <= 0:
        raise ConfigurationError(f"{name} must be greater than 0")
    return parsed


def _read_bool_env(name: str, default: bool) -> bool:
    raw = _env_str(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def allowed_origins_from_env() -> tuple[str, ...]:
    raw = _env_str(ALLOWED_ORIGINS_ENV)
    return tuple(origin.strip() for origin in raw.split(",") if origin.strip())


def load_config() -> PaymentConfig:
    environment = configured_environment()
    if environment not in VALID_ENVIRONMENTS:
        raise ConfigurationError(f"{ENVIRONMENT_ENV} must be production or sandbox")
    default_base_url = SANDBOX_API_BASE_URL if environment == "sandbox" else PRODUCTION_API_BASE_URL

    min_amount = _read_decimal_env(MIN_AMOUNT_ENV, DEFAULT_MIN_AMOUNT)
    max_amount = _read_decimal_env(MAX_AMOUNT_ENV, DEFAULT_MAX_AMOUNT)
    if min_amount > max_amount:
        raise ConfigurationError(f"{MIN_AMOUNT_ENV} must not exceed {MAX_AMOUNT_ENV}")

    return PaymentConfig(
        access_token=_env_str(ACCESS_TOKEN_ENV),
        access_token_secret_id=_env_str(ACCESS_TOKEN_SECRET_ENV),
        location_id=_env_str(LOCATION_ID_ENV),
        environment=environment,
        api_base_url=(_env_str(API_BASE_URL_ENV) or default_base_url).rstrip("/"),
        api_version=_env_str(API_VERSION_ENV) or DEFAULT_API_VERSION,
        request_timeout_seconds=float(_read_int_env(REQUEST_TIMEOUT_ENV, DEFAULT_REQUEST_TIMEOUT_SECONDS)),
        max_upstream_retries=_read_int_env(
            MAX_UPSTREAM_RETRIES_ENV,
            DEFAULT_MAX_UPSTREAM_RETRIES,
            minimum=0,
            maximum=MAX_UPSTREAM_RETRIES,
        ),
        min_amount=min_amount,
        max_amount=max_amount,
        idempotency_table_name=_env_str(IDEMPOTENCY_TABLE_ENV) or None,
        idempotency_ttl_seconds=_read_int_env(IDEMPOTENCY_TTL_ENV, DEFAULT_IDEMPOTENCY_TTL_SECONDS),
        strict_idempotency_keys=_read_bool_env(STRICT_IDEMPOTENCY_ENV, True),
        hardened_errors=_read_bool_env(HARDENED_ERRORS_ENV, True),
        rate_limit_table_name=_env_str(RATE_LIMIT_TABLE_ENV) or None,
        requests_per_minute=_read_int_env(REQUESTS_PER_MINUTE_ENV, DEFAULT_REQUESTS_PER_MINUTE),
        hourly_limit=_read_decimal_env(HOURLY_LIMIT_ENV, DEFAULT_HOURLY_LIMIT),
        daily_limit=_read_decimal_env(DAILY_LIMIT_ENV, DEFAULT_DAILY_LIMIT),
        allowed_origins=allowed_origins_from_env(),
        max_body_bytes=_read_int_env(MAX_BODY_BYTES_ENV, DEFAULT_MAX_BODY_BYTES),
    )


def get_config() -> PaymentConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def resolve_access_token(config: PaymentConfig) -> str:
    """Return the upstream bearer token, fetching it from Secrets Manager at most once."""
    global _ACCESS_TOKEN_CACHE
    if config.access_token:
        return config.access_token
    if _ACCESS_TOKEN_CACHE:
        return _ACCESS_TOKEN_CACHE
    if not config.access_token_secret_id:
        raise ConfigurationError(f"{ACCESS_TOKEN_ENV} environment variable not set")

    try:
        secret = boto3.client("secretsmanager").get_secret_value(SecretId=config.access_token_secret_id)
    except (ClientError, BotoCoreError) as exc:
        raise ConfigurationError("Unable to read the Square access token secret") from exc

    secret_value = secret.get("SecretString")
    if not secret_value and secret.get("SecretBinary"):
        raw_binary = secret["SecretBinary"]
        if isinstance(raw_binary, str):
            raw_binary = base64.b64decode(raw_binary)
        secret_value = raw_binary.decode("utf-8")
    token = str(secret_value or "").strip()
    if not token:
        raise ConfigurationError("Square access token secret is empty")

    _ACCESS_TOKEN_CACHE = token
    return token


class UpstreamRetry(Retry):
    """Retry policy whose ``Retry-After`` wait is capped and ignores unparsable values."""

    def get_retry_after(self, response: Any) -> float | None:
        try:
            retry_after = super().get_retry_after(response)
        except InvalidHeader:
            logger.warning("ignoring malformed Retry-After header from upstream")
            return None
        if retry_after is None:
            return None
        return min(max(retry_after, 0), MAX_RETRY_AFTER_SECONDS)


def build_upstream_retry(max_retries: int) -> UpstreamRetry:
    # Read timeouts surface as requests.ReadTimeout instead of being retried or wrapped.
    return UpstreamRetry(
        total=max_retries,
        read=False,
        status_forcelist=RETRYABLE_UPSTREAM_STATUSES,
        allowed_methods=frozenset({"GET", "POST"}),
        backoff_factor=RETRY_BACKOFF_SECONDS,
        respect_retry_after_header=True,
        raise_on_status=False,
    )


def get_upstream_session(config: PaymentConfig) -> requests.Session:
    global _UPSTREAM_SESSION
    if _UPSTREAM_SESSION is None:
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=build_upstream_retry(config.max_upstream_retries))
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        _UPSTREAM_SESSION = session
    return _UPSTREAM_SESSION


def get_dynamodb_resource() -> Any:
    global _DYNAMODB_RESOURCE
    if _DYNAMODB_RESOURCE is None:
        _DYNAMODB_RESOURCE = boto3.resource(
            "dynamodb",
            config=Config(
                retries={"max_attempts": 2, "mode": "standard"},
                connect_timeout=2,
                read_timeout=2,
            ),
        )
    return _DYNAMODB_RESOURCE


def _normalize_headers(headers: Any) -> dict[str, str]:
    if not isinstance(headers, dict):
        return {}
    normalized: dict[str, str] = {}
    for key, value in headers.items():
        if isinstance(key, str) and value is not None:
            normalized[key.lower()] = str(value).strip()
    return normalized


def request_method(event: dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        request_context = event.get("requestContext")
        if isinstance(request_context, dict):
            http_context = request_context.get("http")
            if isinstance(http_context, dict):
                method = http_context.get("method")
    return str(method or "GET").strip().upper()


def client_ip(event: dict[str, Any], headers: dict[str, str]) -> str:
    """Return the caller's address as seen by API Gateway.

    Forwarding headers are caller-controlled, so they are only consulted when the
    event carries no gateway source IP (direct invocations and local tests).
    """
    request_context = event.get("requestContext")
    if isinstance(request_context, dict):
        identity = request_context.get("identity")
        if isinstance(identity, dict) and identity.get("sourceIp"):
            return str(identity["sourceIp"])
        http_context = request_context.get("http")
        if isinstance(http_context, dict) and http_context.get("sourceIp"):
            return str(http_context["sourceIp"])

    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if headers.get("x-real-ip"):
        return headers["x-real-ip"]
    return "unknown"


def client_fingerprint(ip_address: str, length: int = 16) -> str:
    return hashlib.sha256(ip_address.encode("utf-8")).hexdigest()[:length]


def _raw_body(event: dict[str, Any]) -> str:
    body = event.get("body")
    if body in (None, ""):
        return ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body).decode("utf-8")
        except Exception as exc:
            raise BadRequestError("body must be valid base64-encoded JSON") from exc
    return str(body)


def _decode_event_body(raw_body: str) -> dict[str, Any]:
    if not raw_body:
        return {}
    try:
        parsed_body = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise BadRequestError("Invalid JSON in request body") from exc
    if not isinstance(parsed_body, dict):
        raise BadRequestError("JSON body must be an object")
    return parsed_body


def redact_for_logging(data: Any) -> Any:
    """Replace payment instruments, credentials and PII with a marker, recursively."""
    if isinstance(data, list):
        return [redact_for_logging(item) for item in data]
    if not isinstance(data, dict):
        return data
    redacted: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(key, str) and key.lower() in SENSITIVE_LOG_KEYS:
            redacted[key] = "[REDACTED]"
        else:
            redacted[key] = redact_for_logging(value)
    return redacted


def _log_payload(message: str, payload: dict[str, Any]) -> None:
    logger.info("%s %s", message, json.dumps(redact_for_logging(payload), default=str)[:LOG_TRUNCATE_LENGTH])


def cors_headers(origin: str | None, allowed_origins: tuple[str, ...], methods: str = "POST, OPTIONS") -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type, Authorization, Idempotency-Key",
    }
    if not allowed_origins:
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin and origin in allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
        headers["Vary"] = "Origin"
    return headers


def _response(status_code: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
    merged_headers = {"Content-Type": "application/json"}
    if headers:
        merged_headers.update(headers)
    try:
        encoded_body = json.dumps(body, default=str)
    except (TypeError, ValueError):
        logger.exception("Failed to encode response body")
        return {"statusCode": 500, "headers": merged_headers, "body": FALLBACK_ERROR_BODY}
    return {"statusCode": status_code, "headers": merged_headers, "body": encoded_body}


def preflight_response(headers: dict[str, str]) -> dict[str, Any]:
    return {"statusCode": 200, "headers": headers, "body": ""}


def _error_body(message: str, code: str, detail: str | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"message": message, "code": code}
    if detail is not None:
        error["detail"] = detail
    return {"success": False, "error": error}


def to_response(result: PaymentOutcome, hardened: bool = True) -> tuple[int, dict[str, Any]]:
    """Map a pipeline outcome onto ``(status_code, body)``."""
    if isinstance(result, UpstreamPaymentResult):
        if not result.success:
            status_label = (result.status or "FAILED").upper()
            return 402, _error_body(
                GENERIC_MESSAGES[402] if hardened else f"Payment {status_label.lower()} by processor",
                f"SQUARE_PAYMENT_{status_label}",
                None if hardened else result.payment_id,
            )
        return 200, {
            "success": True,
            "payment_id": result.payment_id,
            "status": result.status,
            "order_id": result.order_id,
            "transaction_id": result.payment_id,
            "message": "Payment processed successfully",
            "amount_money": result.amount_money,
        }

    if result.kind == UPSTREAM_REJECTED:
        status_code = result.status_code or 502
    else:
        status_code = FAILURE_STATUS_CODES.get(result.kind, 500)

    if result.kind in CLIENT_FAILURE_KINDS:
        return status_code, _error_body(result.message, result.code)
    if hardened:
        message = GENERIC_MESSAGES.get(status_code, GENERIC_UPSTREAM_REJECTION_MESSAGE)
        return status_code, _error_body(message, result.code)
    return status_code, _error_body(result.message, result.code, result.detail)


def _outcome_response(result: PaymentOutcome, hardened: bool, headers: dict[str, str]) -> dict[str, Any]:
    if isinstance(result, Failure):
        logger.warning(
            "payment failed kind=%s code=%s message=%s detail=%s",
            result.kind,
            result.code,
            result.message,
            result.detail,
        )
    status_code, body = to_response(result, hardened=hardened)
    return _response(status_code, body, headers=headers)


def _is_present(value: Any) -> bool:
    return value is not None and value != ""


def _aliased_value(raw: dict[str, Any], field_name: str) -> Any:
    for key in FIELD_ALIASES[field_name]:
        value = raw.get(key)
        if _is_present(value):
            return value
    return None


def sanitize_note_value(value: Any) -> str:
    return NOTE_FORBIDDEN_PATTERN.sub("", str(value)).strip()[:NOTE_VALUE_MAX_LENGTH]


def amount_to_cents(amount: Decimal) -> int:
    return int((amount * CENTS_PER_UNIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _normalize_amount(raw_amount: Any, min_amount: Decimal, max_amount: Decimal, errors: list[str]) -> Decimal | None:
    if raw_amount is None:
        errors.append("amount is required")
        return None
    if isinstance(raw_amount, bool) or not isinstance(raw_amount, (int, float, str, Decimal)):
        errors.append("amount must be a number")
        return None
    try:
        amount = Decimal(str(raw_amount).strip())
    except InvalidOperation:
        errors.append("amount must be a valid number")
        return None
    if not amount.is_finite():
        errors.append("amount must be a valid number")
        return None

    if amount <= 0:
        errors.append("amount must be greater than zero")
    elif amount < min_amount:
        errors.append(f"amount must be at least ${min_amount}")
    elif amount > max_amount:
        errors.append(f"amount exceeds transaction limit of ${max_amount}")
    else:
        return amount
    return None


def normalize(
    raw: dict[str, Any],
    min_amount: Decimal = DEFAULT_MIN_AMOUNT,
    max_amount: Decimal = DEFAULT_MAX_AMOUNT,
) -> PaymentRequest | list[str]:
    """Validate a loosely-typed payment payload.

    Returns a ``PaymentRequest`` or the complete list of validation errors.
    """
    if not isinstance(raw, dict):
        return ["request body must be a JSON object"]

    errors: list[str] = []
    amount = _normalize_amount(_aliased_value(raw, "amount"), min_amount, max_amount, errors)

    currency = _aliased_value(raw, "currency")
    if currency is None:
        currency = DEFAULT_CURRENCY
    if not isinstance(currency, str) or not CURRENCY_PATTERN.fullmatch(currency.strip()):
        errors.append("currency must be a 3-letter ISO code (e.g., USD)")
        currency = None
    else:
        currency = currency.strip().upper()

    source_token = _aliased_value(raw, "source_token")
    if source_token is None:
        errors.append("source_id is required")
    elif not isinstance(source_token, str) or len(source_token.strip()) < SOURCE_TOKEN_MIN_LENGTH:
        errors.append("source_id must be a valid payment token")
        source_token = None
    else:
        source_token = source_token.strip()

    idempotency_key = _aliased_value(raw, "idempotency_key")
    if idempotency_key is not None:
        if isinstance(idempotency_key, bool) or not isinstance(idempotency_key, (str, int)):
            errors.append("idempotency_key must be a string")
            idempotency_key = None
        else:
            idempotency_key = str(idempotency_key).strip() or None

    note = None
    risk_profile = _aliased_value(raw, "risk_profile")
    if risk_profile is not None:
        sanitized = sanitize_note_value(risk_profile)
        note = f"risk:{sanitized}" if sanitized else None

    if errors or amount is None or currency is None or source_token is None:
        return errors

    return PaymentRequest(
        amount=amount,
        amount_cents=amount_to_cents(amount),
        currency=currency,
        source_token=source_token,
        idempotency_key=idempotency_key,
        note=note,
    )


def generate_idempotency_key(now_ms: int | None = None) -> str:
    timestamp_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(GENERATED_KEY_ALPHABET) for _ in range(GENERATED_KEY_SUFFIX_LENGTH))
    return f"{timestamp_ms}-{suffix}"


def ensure_key(request: PaymentRequest, strict: bool = True) -> PaymentRequest | Failure:
    if not request.idempotency_key:
        generated = generate_idempotency_key()
        logger.info("generated idempotency key %s", generated)
        return replace(request, idempotency_key=generated)

    key_length = len(request.idempotency_key)
    if strict and not (IDEMPOTENCY_KEY_MIN_LENGTH <= key_length <= IDEMPOTENCY_KEY_MAX_LENGTH):
        return Failure(
            kind=IDEMPOTENCY,
            message=(
                f"idempotency_key must be {IDEMPOTENCY_KEY_MIN_LENGTH}-{IDEMPOTENCY_KEY_MAX_LENGTH} characters"
            ),
            code="IDEMPOTENCY_ERROR",
        )
    return request


def _hash_idempotency_key(idempotency_key: str) -> str:
    return hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()


class DynamoDbIdempotencyStore:
    """Idempotency records keyed by ``sha256(idempotency_key)`` with an ``expires_at`` TTL."""

    def __init__(self, table: Any, ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS) -> None:
        self.table = table
        self.ttl_seconds = ttl_seconds

    def get(self, idempotency_key: str, now: int | None = None) -> dict[str, Any] | None:
        response = self.table.get_item(
            Key={"idempotency_key": _hash_idempotency_key(idempotency_key)},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        if now is not None and int(item.get("expires_at") or 0) <= now:
            return None
        return item

    def _record(self, idempotency_key: str, amount_cents: int, now: int) -> dict[str, Any]:
        return {
            "idempotency_key": _hash_idempotency_key(idempotency_key),
            "amount_cents": amount_cents,
            "created_at": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
            "expires_at": now + self.ttl_seconds,
        }

    def set(self, idempotency_key: str, amount_cents: int, now: int) -> None:
        self.table.put_item(Item=self._record(idempotency_key, amount_cents, now))

    def check_and_set(self, idempotency_key: str, amount_cents: int, now: int) -> dict[str, Any] | None:
        """Atomically claim the key.

        Returns ``None`` when this call created the record, otherwise the live record
        that already holds the key.
        """
        for _ in range(2):
            try:
                self.table.put_item(
                    Item=self._record(idempotency_key, amount_cents, now),
                    ConditionExpression=IDEMPOTENCY_CLAIM_CONDITION,
                    ExpressionAttributeValues={":now": now},
                )
                return None
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                    raise
            existing = self.get(idempotency_key, now=now)
            if existing:
                return existing
        # The record kept changing under us; treat it as held by another request.
        return {"amount_cents": amount_cents}

    def delete(self, idempotency_key: str) -> None:
        self.table.delete_item(Key={"idempotency_key": _hash_idempotency_key(idempotency_key)})


def guard(request: PaymentRequest, store: DynamoDbIdempotencyStore | None, now: int) -> Failure | None:
    if store is None or not request.idempotency_key:
        return None
    try:
        existing = store.check_and_set(request.idempotency_key, request.amount_cents, now)
    except (ClientError, BotoCoreError) as exc:
        logger.warning("idempotency store unavailable, continuing without dedupe: %s", exc)
        return None

    if existing is None:
        return None
    if int(existing.get("amount_cents", -1)) != request.amount_cents:
        return Failure(
            kind=IDEMPOTENCY,
            message="idempotency_key reused with different amount",
            code="IDEMPOTENCY_ERROR",
        )
    return Failure(
        kind=DUPLICATE,
        message="duplicate request - payment already processed",
        code="IDEMPOTENCY_ERROR",
    )


def release(store: DynamoDbIdempotencyStore | None, idempotency_key: str | None) -> None:
    if store is None or not idempotency_key:
        return
    try:
        store.delete(idempotency_key)
    except (ClientError, BotoCoreError) as exc:
        # The record still expires through its TTL.
        logger.warning("failed to release idempotency key: %s", exc)


class DynamoDbRateLimiter:
    """Per-client request and spend counters; every failure of the table fails open."""

    def __init__(self, table: Any) -> None:
        self.table = table

    def _conditional_add(
        self,
        counter_key: str,
        attribute: str,
        increment: int,
        condition: str,
        condition_values: dict[str, Any],
        expires_at: int,
    ) -> bool:
        try:
            self.table.update_item(
                Key={"counter_key": counter_key},
                UpdateExpression=f"ADD {attribute} :inc SET expires_at = if_not_exists(expires_at, :expires_at)",
                ConditionExpression=condition,
                ExpressionAttributeValues={":inc": increment, ":expires_at": expires_at, **condition_values},
            )
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return False
            logger.warning("rate limit counter unavailable: %s", exc)
            return True
        except BotoCoreError as exc:
            logger.warning("rate limit counter unavailable: %s", exc)
            return True

    def allow_request(self, client_key: str, limit: int, now: int) -> bool:
        window = now // 60
        return self._conditional_add(
            counter_key=f"rate:{client_key}:{window}",
            attribute="hits",
            increment=1,
            condition=REQUEST_COUNTER_CONDITION,
            condition_values={":limit": limit},
            expires_at=(window + 1) * 60,
        )

    def reserve_spend(
        self,
        client_key: str,
        amount_cents: int,
        hourly_limit_cents: int,
        daily_limit_cents: int,
        now: int,
    ) -> str | None:
        """Add ``amount_cents`` to the hourly and daily totals; return the exceeded window name."""
        hour_window = now // 3600
        day_window = now // 86400
        hour_key = f"spend:{client_key}:hour:{hour_window}"

        if amount_cents > hourly_limit_cents or not self._conditional_add(
            counter_key=hour_key,
            attribute="total_cents",
            increment=amount_cents,
            condition=SPEND_COUNTER_CONDITION,
            condition_values={":remaining": hourly_limit_cents - amount_cents},
            expires_at=(hour_window + 1) * 3600,
        ):
            return "hourly"

        if amount_cents > daily_limit_cents or not self._conditional_add(
            counter_key=f"spend:{client_key}:day:{day_window}",
            attribute="total_cents",
            increment=amount_cents,
            condition=SPEND_COUNTER_CONDITION,
            condition_values={":remaining": daily_limit_cents - amount_cents},
            expires_at=(day_window + 1) * 86400,
        ):
            try:
                self.table.update_item(
                    Key={"counter_key": hour_key},
                    UpdateExpression="ADD total_cents :inc",
                    ExpressionAttributeValues={":inc": -amount_cents},
                )
            except (ClientError, BotoCoreError) as exc:
                logger.warning("failed to roll back hourly spend counter: %s", exc)
            return "daily"
        return None


def upstream_headers(config: PaymentConfig, access_token: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {access_token}",
        "Square-Version": config.api_version,
    }


def build_upstream_payload(request: PaymentRequest, location_id: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "source_id": request.source_token,
        "idempotency_key": request.idempotency_key,
        "amount_money": {
            "amount": request.amount_cents,
            "currency": request.currency,
        },
        "location_id": location_id,
        "autocomplete": True,
    }
    if request.note:
        payload["note"] = request.note
    return payload


def transport_failure(exc: requests.exceptions.RequestException) -> Failure:
    if isinstance(exc, requests.exceptions.Timeout):
        return Failure(UPSTREAM_TIMEOUT, "Payment service timeout", "TIMEOUT_ERROR", detail=str(exc))
    if isinstance(exc, requests.exceptions.ConnectionError):
        return Failure(
            UPSTREAM_UNREACHABLE,
            "Cannot connect to payment service",
            "CONNECTION_ERROR",
            detail=str(exc),
        )
    return Failure(
        UPSTREAM_TRANSPORT,
        "Payment service request failed",
        "INTERNAL_ERROR",
        detail=f"{type(exc).__name__}: {exc}",
    )


def upstream_rejection(response: Any) -> Failure:
    try:
        error_data = response.json()
    except ValueError:
        error_data = None
    if not isinstance(error_data, dict):
        error_data = {"detail": (getattr(response, "text", "") or f"HTTP {response.status_code}")[:200]}

    errors = error_data.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        first_error = errors[0]
        upstream_code = str(first_error.get("code") or "UNKNOWN")
        detail = str(first_error.get("detail") or "Payment failed")
        code = f"SQUARE_{upstream_code}"
    else:
        detail = str(error_data.get("detail") or f"HTTP {response.status_code}")
        code = "SQUARE_API_ERROR"

    return Failure(
        kind=UPSTREAM_REJECTED,
        message=detail,
        code=code,
        status_code=response.status_code,
        detail=detail,
    )


def invoke(
    request: PaymentRequest,
    config: PaymentConfig,
    access_token: str,
    session: Any | None = None,
) -> PaymentOutcome:
    resolved_session = session or get_upstream_session(config)
    url = f"{config.api_base_url}/v2/payments"
    logger.info(
        "charging %s %s (%s cents) at %s",
        request.amount,
        request.currency,
        request.amount_cents,
        url,
    )

    try:
        response = resolved_session.post(
            url,
            headers=upstream_headers(config, access_token),
            json=build_upstream_payload(request, config.location_id),
            timeout=config.request_timeout_seconds,
        )
    except requests.exceptions.RequestException as exc:
        return transport_failure(exc)

    logger.info("upstream responded with status %s", response.status_code)
    if not response.ok:
        return upstream_rejection(response)

    try:
        data = response.json()
    except ValueError as exc:
        return Failure(
            INVALID_RESPONSE,
            "Invalid response from payment service",
            "INVALID_RESPONSE",
            detail=str(exc),
        )
    payment = data.get("payment") if isinstance(data, dict) else None
    if not isinstance(payment, dict):
        return Failure(
            INVALID_RESPONSE,
            "Invalid response from payment service",
            "INVALID_RESPONSE",
            detail="response did not contain a payment object",
        )

    status = payment.get("status")
    amount_money = payment.get("amount_money")
    return UpstreamPaymentResult(
        success=str(status or "").upper() not in DECLINED_PAYMENT_STATUSES,
        payment_id=payment.get("id"),
        status=status,
        order_id=payment.get("order_id"),
        amount_money=amount_money if isinstance(amount_money, dict) else {},
    )


def _idempotency_store(config: PaymentConfig) -> DynamoDbIdempotencyStore | None:
    if not config.idempotency_table_name:
        return None
    table = get_dynamodb_resource().Table(config.idempotency_table_name)
    return DynamoDbIdempotencyStore(table, ttl_seconds=config.idempotency_ttl_seconds)


def _rate_limiter(config: PaymentConfig) -> DynamoDbRateLimiter | None:
    if not config.rate_limit_table_name:
        return None
    return DynamoDbRateLimiter(get_dynamodb_resource().Table(config.rate_limit_table_name))


def process_payment(
    payload: dict[str, Any],
    config: PaymentConfig,
    client_key: str,
    now: int | None = None,
    session: Any | None = None,
    store: DynamoDbIdempotencyStore | None = None,
    limiter: DynamoDbRateLimiter | None = None,
) -> PaymentOutcome:
    resolved_now = now if now is not None else int(time.time())

    if not config.access_token and not config.access_token_secret_id:
        return Failure(CONFIGURATION, f"{ACCESS_TOKEN_ENV} environment variable not set", "MISSING_CREDENTIALS")
    if not config.location_id:
        return Failure(CONFIGURATION, f"{LOCATION_ID_ENV} environment variable not set", "MISSING_CREDENTIALS")

    normalized = normalize(payload, min_amount=config.min_amount, max_amount=config.max_amount)
    if isinstance(normalized, list):
        return Failure(VALIDATION, "; ".join(normalized), "VALIDATION_ERROR")

    if limiter is not None:
        exceeded = limiter.reserve_spend(
            client_key,
            normalized.amount_cents,
            hourly_limit_cents=amount_to_cents(config.hourly_limit),
            daily_limit_cents=amount_to_cents(config.daily_limit),
            now=resolved_now,
        )
        if exceeded:
            limit = config.hourly_limit if exceeded == "hourly" else config.daily_limit
            return Failure(
                RATE_LIMITED,
                f"{exceeded.capitalize()} transaction limit of ${limit} exceeded",
                "VELOCITY_LIMIT_EXCEEDED",
            )

    keyed = ensure_key(normalized, strict=config.strict_idempotency_keys)
    if isinstance(keyed, Failure):
        return keyed

    try:
        access_token = resolve_access_token(config)
    except ConfigurationError as exc:
        return Failure(CONFIGURATION, str(exc), "MISSING_CREDENTIALS", detail=repr(exc.__cause__))

    conflict = guard(keyed, store, resolved_now)
    if conflict is not None:
        return conflict

    try:
        result = invoke(keyed, config, access_token, session=session)
    except Exception:
        release(store, keyed.idempotency_key)
        raise
    if isinstance(result, Failure):
        release(store, keyed.idempotency_key)
    else:
        logger.info("payment processed id=%s status=%s", result.payment_id, result.status)
    return result


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    headers = {"Content-Type": "application/json"}
    hardened = True
    try:
        event = event if isinstance(event, dict) else {}
        request_headers = _normalize_headers(event.get("headers"))
        headers = cors_headers(request_headers.get("origin"), allowed_origins_from_env())

        method = request_method(event)
        if method == "OPTIONS":
            return preflight_response(headers)

        try:
            config = get_config()
        except ConfigurationError as exc:
            return _outcome_response(Failure(CONFIGURATION, str(exc), "CONFIGURATION_ERROR"), True, headers)
        hardened = config.hardened_errors

        if method != "POST":
            return _outcome_response(Failure(METHOD_NOT_ALLOWED, "Method not allowed", "METHOD_NOT_ALLOWED"), hardened, headers)

        now = int(time.time())
        client_key = client_fingerprint(client_ip(event, request_headers))
        limiter = _rate_limiter(config)
        if limiter is not None and not limiter.allow_request(client_key, config.requests_per_minute, now):
            return _outcome_response(Failure(RATE_LIMITED, "Too many requests", "RATE_LIMIT_EXCEEDED"), hardened, headers)

        try:
            raw_body = _raw_body(event)
            if len(raw_body.encode("utf-8")) > config.max_body_bytes:
                return _outcome_response(
                    Failure(PAYLOAD_TOO_LARGE, "Request too large", "PAYLOAD_TOO_LARGE"), hardened, headers
                )
            payload = _decode_event_body(raw_body)
        except BadRequestError as exc:
            return _outcome_response(Failure(VALIDATION, str(exc), "INVALID_JSON"), hardened, headers)

        _log_payload("payment request", payload)
        result = process_payment(
            payload,
            config,
            client_key=client_key,
            now=now,
            store=_idempotency_store(config),
            limiter=limiter,
        )
        return _outcome_response(result, hardened, headers)

    except Exception as exc:
        logger.exception("unhandled error while processing payment")
        return _outcome_response(
            Failure(INTERNAL, "Unexpected error", "INTERNAL_ERROR", detail=f"{type(exc).__name__}: {exc}"),
            hardened,
            headers,
        )
