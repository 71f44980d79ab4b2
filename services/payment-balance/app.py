"""
Lambda handler for GET /balance.

Flow:
1. Validate the optional ``days`` query parameter (1-31, default 7).
2. Look up the configured Square location.
3. Page through payments created in the window (at most MAX_PAYMENT_PAGES pages).
4. Summarize completed versus pending payments.
"""

from __future__ import annotations

import importlib.util
import logging
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import requests

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 7
MAX_WINDOW_DAYS = 31
MAX_PAYMENT_PAGES = 5
PAYMENTS_PAGE_LIMIT = 50
MAX_COMPLETED_IN_RESPONSE = 10
LOOKUP_TIMEOUT_SECONDS = 10
PENDING_STATUSES = frozenset({"PENDING", "APPROVED"})


def _load_service_module(module_name: str, service_dir: str) -> Any:
    module_path = Path(__file__).resolve().parents[1] / service_dir / "app.py"
    module_spec = importlib.util.spec_from_file_location(module_name, module_path)
    if module_spec is None or module_spec.loader is None:
        raise RuntimeError(f"Unable to load service module: {service_dir}")
    module = importlib.util.module_from_spec(module_spec)
    sys.modules[module_name] = module
    module_spec.loader.exec_module(module)
    return module


_PAYMENT_MODULE = _load_service_module("payment_balance_process_payment", "process-payment")


def parse_window_days(event: dict[str, Any]) -> int:
    params = event.get("queryStringParameters") or {}
    raw_days = params.get("days") if isinstance(params, dict) else None
    if raw_days in (None, ""):
        return DEFAULT_WINDOW_DAYS
    try:
        days = int(str(raw_days).strip())
    except ValueError as exc:
        raise _PAYMENT_MODULE.BadRequestError("days must be an integer") from exc
    if days < 1 or days > MAX_WINDOW_DAYS:
        raise _PAYMENT_MODULE.BadRequestError(f"days must be between 1 and {MAX_WINDOW_DAYS}")
    return days


def _format_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def amount_cents(payment: dict[str, Any]) -> int | None:
    """Return the payment amount in cents, or None when Square sent something unusable."""
    raw_amount = (payment.get("amount_money") or {}).get("amount") or 0
    try:
        return int(raw_amount)
    except (TypeError, ValueError, OverflowError):
        logger.warning("skipping payment %s with malformed amount %r", payment.get("id"), raw_amount)
        return None


def summarize_payment(payment: dict[str, Any], cents: int) -> dict[str, Any]:
    amount_money = payment.get("amount_money") or {}
    card = (payment.get("card_details") or {}).get("card") or {}
    return {
        "id": payment.get("id"),
        "status": payment.get("status"),
        "amount": round(cents / 100, 2),
        "currency": amount_money.get("currency", "USD"),
        "created_at": payment.get("created_at"),
        "source_type": payment.get("source_type"),
        "card_brand": card.get("card_brand"),
        "last_4": card.get("last_4"),
    }


def summarize_payments(payments: list[dict[str, Any]]) -> dict[str, Any]:
    completed: list[dict[str, Any]] = []
    pending: list[dict[str, Any]] = []
    completed_cents = 0
    pending_cents = 0

    for payment in payments:
        status = str(payment.get("status") or "").upper()
        if status != "COMPLETED" and status not in PENDING_STATUSES:
            continue
        cents = amount_cents(payment)
        if cents is None:
            continue
        if status == "COMPLETED":
            completed.append(summarize_payment(payment, cents))
            completed_cents += cents
        else:
            pending.append(summarize_payment(payment, cents))
            pending_cents += cents

    return {
        "completed": completed[:MAX_COMPLETED_IN_RESPONSE],
        "pending": pending,
        "total_completed": round(completed_cents / 100, 2),
        "total_pending": round(pending_cents / 100, 2),
        "count_completed": len(completed),
        "count_pending": len(pending),
    }


def _get_json(session: Any, url: str, config: Any, access_token: str, params: dict[str, Any] | None = None) -> Any:
    payment = _PAYMENT_MODULE
    try:
        response = session.get(
            url,
            headers=payment.upstream_headers(config, access_token),
            params=params,
            timeout=min(config.request_timeout_seconds, LOOKUP_TIMEOUT_SECONDS),
        )
    except requests.exceptions.RequestException as exc:
        return payment.transport_failure(exc)

    if not response.ok:
        return payment.upstream_rejection(response)
    try:
        data = response.json()
    except ValueError as exc:
        return payment.Failure(
            payment.INVALID_RESPONSE,
            "Invalid response from payment service",
            "INVALID_RESPONSE",
            detail=str(exc),
        )
    if not isinstance(data, dict):
        return payment.Failure(
            payment.INVALID_RESPONSE,
            "Invalid response from payment service",
            "INVALID_RESPONSE",
            detail="response was not a JSON object",
        )
    return data


def list_recent_payments(
    session: Any,
    config: Any,
    access_token: str,
    begin: datetime,
    end: datetime,
) -> Any:
    payments: list[dict[str, Any]] = []
    cursor: str | None = None
    for _ in range(MAX_PAYMENT_PAGES):
        params: dict[str, Any] = {
            "location_id": config.location_id,
            "begin_time": _format_timestamp(begin),
            "end_time": _format_timestamp(end),
            "sort_order": "DESC",
            "limit": PAYMENTS_PAGE_LIMIT,
        }
        if cursor:
            params["cursor"] = cursor

        page = _get_json(session, f"{config.api_base_url}/v2/payments", config, access_token, params=params)
        if isinstance(page, _PAYMENT_MODULE.Failure):
            return page
        payments.extend(item for item in page.get("payments") or [] if isinstance(item, dict))
        cursor = page.get("cursor")
        if not cursor:
            break
    else:
        if cursor:
            logger.info("stopped listing payments after %s pages", MAX_PAYMENT_PAGES)
    return payments


def get_balance(days: int, config: Any, session: Any | None = None, now: datetime | None = None) -> Any:
    """Return the balance body, or a ``Failure`` for the response mapper."""
    payment = _PAYMENT_MODULE
    if not config.credentials_configured:
        return payment.Failure(
            payment.CONFIGURATION,
            f"{payment.ACCESS_TOKEN_ENV} and {payment.LOCATION_ID_ENV} must be set",
            "MISSING_CREDENTIALS",
        )
    try:
        access_token = payment.resolve_access_token(config)
    except payment.ConfigurationError as exc:
        return payment.Failure(payment.CONFIGURATION, str(exc), "MISSING_CREDENTIALS")

    resolved_session = session or payment.get_upstream_session(config)
    end = now or datetime.now(timezone.utc)
    begin = end - timedelta(days=days)

    location_data = _get_json(
        resolved_session,
        f"{config.api_base_url}/v2/locations/{config.location_id}",
        config,
        access_token,
    )
    if isinstance(location_data, payment.Failure):
        return location_data
    location = location_data.get("location") or {}

    payments = list_recent_payments(resolved_session, config, access_token, begin, end)
    if isinstance(payments, payment.Failure):
        return payments

    return {
        "success": True,
        "environment": config.environment,
        "location": {
            "name": location.get("name"),
            "currency": location.get("currency", "USD"),
            "status": location.get("status"),
        },
        "payments": summarize_payments(payments),
        "window_days": days,
        "timestamp": int(time.time()),
    }


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    payment = _PAYMENT_MODULE
    headers = {"Content-Type": "application/json"}
    hardened = True
    try:
        event = event if isinstance(event, dict) else {}
        request_headers = payment._normalize_headers(event.get("headers"))
        headers = payment.cors_headers(
            request_headers.get("origin"),
            payment.allowed_origins_from_env(),
            methods="GET, OPTIONS",
        )

        method = payment.request_method(event)
        if method == "OPTIONS":
            return payment.preflight_response(headers)

        try:
            config = payment.get_config()
        except payment.ConfigurationError as exc:
            return payment._outcome_response(
                payment.Failure(payment.CONFIGURATION, str(exc), "CONFIGURATION_ERROR"), True, headers
            )
        hardened = config.hardened_errors

        if method != "GET":
            return payment._outcome_response(
                payment.Failure(payment.METHOD_NOT_ALLOWED, "Use GET for balance check", "METHOD_NOT_ALLOWED"),
                hardened,
                headers,
            )

        try:
            days = parse_window_days(event)
        except payment.BadRequestError as exc:
            return payment._outcome_response(
                payment.Failure(payment.VALIDATION, str(exc), "VALIDATION_ERROR"), hardened, headers
            )

        result = get_balance(days, config)
        if isinstance(result, payment.Failure):
            return payment._outcome_response(result, hardened, headers)
        return payment._response(200, result, headers=headers)

    except Exception as exc:
        logger.exception("unhandled error while reading balance")
        return payment._outcome_response(
            payment.Failure(payment.INTERNAL, "Unexpected error", "INTERNAL_ERROR", detail=f"{type(exc).__name__}: {exc}"),
            hardened,
            headers,
        )
