import importlib.util
import json
import os
import sys
from pathlib import Path
import unittest
from unittest import mock


def load_app_module():
    module_path = Path(__file__).resolve().parents[2] / "services" / "payment-health" / "app.py"
    module_name = "payment_health_app_unit"
    module_spec = importlib.util.spec_from_file_location(module_name, module_path)
    if module_spec is None or module_spec.loader is None:
        raise RuntimeError("Unable to load payment-health module")
    module = importlib.util.module_from_spec(module_spec)
    sys.modules[module_name] = module
    module_spec.loader.exec_module(module)
    return module


app = load_app_module()
payment = app._PAYMENT_MODULE


class PaymentHealthLambdaTests(unittest.TestCase):
    def setUp(self):
        self.original_config = payment._CONFIG
        payment._CONFIG = None
        self.env_patch = mock.patch.dict(
            os.environ,
            {
                "SQUARE_ACCESS_TOKEN": "sq-access-token",
                "SQUARE_ACCESS_TOKEN_SECRET_ID": "",
                "SQUARE_LOCATION_ID": "LOC123",
                "SQUARE_ENVIRONMENT": "sandbox",
                "PAYMENT_MAX_AMOUNT": "",
                "PAYMENT_ALLOWED_ORIGINS": "",
            },
            clear=False,
        )
        self.env_patch.start()
        self.session_patch = mock.patch.object(
            payment, "get_upstream_session", side_effect=AssertionError("health must not call upstream")
        )
        self.session_patch.start()

    def tearDown(self):
        self.session_patch.stop()
        self.env_patch.stop()
        payment._CONFIG = self.original_config

    def _set_env(self, **values):
        os.environ.update(values)
        payment._CONFIG = None

    def test_configured_service_is_healthy(self):
        response = app.lambda_handler({"httpMethod": "GET", "headers": {}}, None)

        self.assertEqual(response["statusCode"], 200)
        body = json.loads(response["body"])
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["service"], "square-api")
        self.assertTrue(body["credentials_configured"])
        self.assertEqual(body["environment"], "sandbox")
        self.assertIsInstance(body["timestamp"], int)
        self.assertNotIn("sq-access-token", response["body"])

    def test_missing_token_is_misconfigured(self):
        self._set_env(SQUARE_ACCESS_TOKEN="")

        body = json.loads(app.lambda_handler({"httpMethod": "GET"}, None)["body"])

        self.assertEqual(body["status"], "misconfigured")
        self.assertFalse(body["credentials_configured"])

    def test_invalid_configuration_is_reported_not_raised(self):
        self._set_env(SQUARE_ENVIRONMENT="Staging")

        response = app.lambda_handler({"httpMethod": "GET"}, None)

        self.assertEqual(response["statusCode"], 200)
        body = json.loads(response["body"])
        self.assertEqual(body["status"], "misconfigured")
        self.assertEqual(body["environment"], "staging")

    def test_invalid_amount_configuration_reports_default_environment(self):
        self._set_env(SQUARE_ENVIRONMENT="", PAYMENT_MAX_AMOUNT="lots")

        body = json.loads(app.lambda_handler({"httpMethod": "GET"}, None)["body"])

        self.assertEqual(body["status"], "misconfigured")
        self.assertEqual(body["environment"], "production")

    def test_options_returns_empty_preflight_regardless_of_configuration(self):
        self._set_env(SQUARE_ENVIRONMENT="bogus", SQUARE_ACCESS_TOKEN="")

        response = app.lambda_handler({"httpMethod": "OPTIONS"}, None)

        self.assertEqual(response["statusCode"], 200)
        self.assertEqual(response["body"], "")
        self.assertEqual(response["headers"]["Access-Control-Allow-Origin"], "*")
        self.assertEqual(response["headers"]["Access-Control-Allow-Methods"], "GET, OPTIONS")

    def test_http_api_v2_options(self):
        response = app.lambda_handler({"requestContext": {"http": {"method": "OPTIONS"}}}, None)

        self.assertEqual(response["statusCode"], 200)
        self.assertEqual(response["body"], "")

    def test_post_is_not_allowed(self):
        response = app.lambda_handler({"httpMethod": "POST"}, None)

        self.assertEqual(response["statusCode"], 405)
        self.assertEqual(json.loads(response["body"])["error"]["code"], "METHOD_NOT_ALLOWED")

    def test_health_status_uses_given_timestamp(self):
        self.assertEqual(app.health_status(now=1700000000)["timestamp"], 1700000000)


if __name__ == "__main__":
    unittest.main()
