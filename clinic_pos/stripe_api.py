"""
Stripe REST client
==================
Direct form-encoded calls to the Stripe API for the server-driven
Terminal flow:

  relay  →  Stripe API  →  WisePOS E reader

Only the handful of endpoints the relay needs are wrapped:
  - POST /v1/payment_intents
  - POST /v1/terminal/readers/{id}/process_payment_intent
  - POST /v1/test_helpers/terminal/readers/{id}/present_payment_method
  - GET  /v1/payment_intents/{id}
  - GET  /v1/terminal/readers/{id}
  - POST /v1/refunds
"""
from __future__ import annotations

import base64
import http.client
import json
import logging
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from .config import STRIPE_API_URL
from .errors import NotFoundError, UpstreamError

logger = logging.getLogger("clinic_pos.stripe")


def _path_id(value: str) -> str:
    return quote(value, safe="")


def _error_details(error_body: str):
    try:
        err = json.loads(error_body).get("error", {})
        return err.get("message") or error_body[:200], err.get("code")
    except (ValueError, AttributeError):
        return error_body[:200], None


class StripeClient:
    """Minimal Stripe API client authenticated with a secret key."""

    def __init__(self, secret_key: str, api_url: str = STRIPE_API_URL, timeout: float = 15.0):
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.api_calls = 0
        self.api_errors = 0

    def _auth_header(self) -> str:
        token = base64.b64encode(f"{self.secret_key}:".encode()).decode()
        return f"Basic {token}"

    def _request(self, method: str, endpoint: str, params: Optional[Dict[str, str]] = None,
                 idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        headers = {"Authorization": self._auth_header()}
        body = None
        if method == "POST":
            body = urlencode(params or {}).encode("utf-8")
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            if idempotency_key:
                headers["Idempotency-Key"] = idempotency_key
        elif params:
            url = f"{url}?{urlencode(params)}"

        logger.info(f"[STRIPE] {method} {url}")
        if params:
            logger.debug(f"[STRIPE] Params: {params}")

        self.api_calls += 1
        try:
            req = Request(url, data=body, headers=headers, method=method)
            with urlopen(req, timeout=self.timeout) as resp:
                resp_body = resp.read().decode("utf-8")
                result = json.loads(resp_body) if resp_body else {}
                logger.debug(f"[STRIPE] Response {resp.status}: {json.dumps(result)[:200]}")
                return result
        except HTTPError as e:
            self.api_errors += 1
            error_body = ""
            try:
                error_body = e.read().decode("utf-8")
            except (OSError, UnicodeDecodeError):
                pass
            logger.error(f"[STRIPE] {method} HTTP {e.code}: {error_body[:500]}")
            message, code = _error_details(error_body)
            if e.code == 404:
                raise NotFoundError(message or "Not found") from e
            raise UpstreamError(f"Stripe API error {e.code}: {message}", http_status=e.code, code=code) from e
        except URLError as e:
            self.api_errors += 1
            logger.error(f"[STRIPE] {method} Network error: {e.reason}")
            raise UpstreamError(f"Stripe network error: {e.reason}") from e
        except (OSError, http.client.HTTPException, ValueError) as e:
            # dropped connections and short reads happen after urlopen returns
            self.api_errors += 1
            logger.error(f"[STRIPE] {method} {url} failed: {e!r}")
            raise UpstreamError(f"Stripe request failed: {e}") from e

    # -- PaymentIntents ------------------------------------------------------
    def create_payment_intent(self, params: Dict[str, str]) -> Dict[str, Any]:
        return self._request("POST", "payment_intents", params)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._request("GET", f"payment_intents/{_path_id(payment_intent_id)}")

    # -- Terminal ------------------------------------------------------------
    def process_payment_intent(self, reader_id: str, payment_intent_id: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"terminal/readers/{_path_id(reader_id)}/process_payment_intent",
            {"payment_intent": payment_intent_id},
        )

    def present_payment_method(self, reader_id: str) -> Dict[str, Any]:
        """Simulate a card tap on a simulated reader (test mode only)."""
        return self._request(
            "POST",
            f"test_helpers/terminal/readers/{_path_id(reader_id)}/present_payment_method",
            {},
        )

    def retrieve_reader(self, reader_id: str) -> Dict[str, Any]:
        return self._request("GET", f"terminal/readers/{_path_id(reader_id)}")

    # -- Refunds -------------------------------------------------------------
    def create_refund(self, charge_id: str, idempotency_key: Optional[str] = None,
                      metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        params = {"charge": charge_id}
        for key, value in (metadata or {}).items():
            params[f"metadata[{key}]"] = value
        return self._request("POST", "refunds", params, idempotency_key=idempotency_key)
