"""
Lambda handler for GET /health.

Reports whether the payment handler is configured. Never calls the upstream API.
"""

from __future__ import annotations

import importlib.util
import logging
import sys
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SERVICE_NAME = "square-api"


def _load_service_module(module_name: str, service_dir: str) -> Any:
    module_path = Path(__file__).resolve().parents[1] / service_dir / "app.py"
    module_spec = importlib.util.spec_from_file_location(module_name, module_path)
    if module_spec is None or module_spec.loader is None:
        raise RuntimeError(f"Unable to load service module: {service_dir}")
    module = importlib.util.module_from_spec(module_spec)
    sys.modules[module_name] = module
    module_spec.loader.exec_module(module)
    return module


_PAYMENT_MODULE = _load_service_module("payment_health_process_payment", "process-payment")


def health_status(now: int | None = None) -> dict[str, Any]:
    try:
        config = _PAYMENT_MODULE.get_config()
    except _PAYMENT_MODULE.ConfigurationError as exc:
        logger.warning("payment configuration invalid: %s", exc)
        environment = _PAYMENT_MODULE.configured_environment()
        return {
            "status": "misconfigured",
            "service": SERVICE_NAME,
            "credentials_configured": False,
            "environment": environment,
            "timestamp": now if now is not None else int(time.time()),
        }

    return {
        "status": "healthy" if config.credentials_configured else "misconfigured",
        "service": SERVICE_NAME,
        "credentials_configured": config.credentials_configured,
        "environment": config.environment,
        "timestamp": now if now is not None else int(time.time()),
    }


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    payment = _PAYMENT_MODULE
    headers = {"Content-Type": "application/json"}
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
        if method != "GET":
            status_code, body = payment.to_response(
                payment.Failure(payment.METHOD_NOT_ALLOWED, "Use GET for health check", "METHOD_NOT_ALLOWED")
            )
            return payment._response(status_code, body, headers=headers)

        return payment._response(200, health_status(), headers=headers)
    except Exception:
        logger.exception("unhandled error in health check")
        status_code, body = payment.to_response(payment.Failure(payment.INTERNAL, "Unexpected error", "INTERNAL_ERROR"))
        return payment._response(status_code, body, headers=headers)
