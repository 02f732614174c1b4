"""Thin client for the Paystack transaction API."""

import hashlib
import hmac
import logging

import requests

from config import get_settings

logger = logging.getLogger(__name__)


class PaystackError(Exception):
    pass


class PaystackClient:
    def __init__(self, secret_key=None, base_url=None, timeout=None):
        settings = get_settings()
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.base_url = (base_url or settings.paystack_base_url).rstrip("/")
        self.timeout = timeout or settings.payment_http_timeout

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            r = requests.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            body = r.json()
        except requests.RequestException as exc:
            raise PaystackError(f"Paystack request failed: {exc}") from exc
        except ValueError as exc:
            raise PaystackError("Paystack returned a non-JSON response") from exc
        if not r.ok or not body.get("status"):
            raise PaystackError(body.get("message") or f"Paystack error (HTTP {r.status_code})")
        return body.get("data") or {}

    def initialize_transaction(self, email, amount_kobo, reference, callback_url, metadata=None):
        """Start a transaction; the returned data carries authorization_url and access_code."""
        payload = {
            "email": email,
            "amount": amount_kobo,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata or {},
        }
        return self._request("POST", "/transaction/initialize", json=payload)

    def verify_transaction(self, reference):
        return self._request("GET", f"/transaction/verify/{reference}")

    def verify_signature(self, body: bytes, signature: str) -> bool:
        if not self.secret_key or not signature:
            return False
        computed = hmac.new(self.secret_key.encode(), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(computed, signature)


def get_paystack_client():
    return PaystackClient()
