"""Client for the PayHero payments API.

Every call goes through ``_request`` so that timeouts, transport failures and
non-2xx answers all surface as ``ExternalServiceError``. Provider error
bodies are logged here and never forwarded to the caller.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from bookstore.core.config import settings
from bookstore.core.errors import ExternalServiceError, ExternalServiceTimeout
from bookstore.core.resources import LazyResource

logger = structlog.get_logger(__name__)

SERVICE = "payment provider"

payhero_http = LazyResource(
    lambda: httpx.Client(
        base_url=settings.PAYHERO_BASE,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        auth=(settings.PAYHERO_API_USERNAME, settings.PAYHERO_API_PASSWORD),
        headers={"Content-Type": "application/json"},
    ),
    "payhero-http",
)


def _request(method: str, path: str, **kwargs) -> Dict[str, Any]:
    try:
        resp = payhero_http.get().request(method, path, **kwargs)
    except httpx.TimeoutException as exc:
        logger.warning("payhero_timeout", method=method, path=path)
        raise ExternalServiceTimeout(SERVICE, f"timeout calling {path}: {exc}") from exc
    except httpx.RequestError as exc:
        logger.warning("payhero_unreachable", method=method, path=path, error=str(exc))
        raise ExternalServiceError(SERVICE, f"error calling {path}: {exc}") from exc
    if resp.is_error:
        logger.error("payhero_api_error", method=method, path=path, status=resp.status_code, body=resp.text)
        raise ExternalServiceError(SERVICE, f"PayHero API error ({resp.status_code}) on {path}")
    try:
        return resp.json()
    except ValueError as exc:
        raise ExternalServiceError(SERVICE, f"invalid JSON from {path}") from exc


def normalize_phone(phone: str) -> str:
    return f"254{phone[1:]}" if phone.startswith("0") else phone


def wallet_balance(channel_id: Optional[int] = None) -> float:
    channel_id = channel_id or settings.PAYHERO_WALLET_CHANNEL_ID
    data = _request("GET", f"/api/v2/payment_channels/{channel_id}")
    balance = (data.get("balance_plain") or {}).get("balance") or 0
    return float(balance)


def withdraw(external_reference: str, amount: int, phone: str) -> Dict[str, Any]:
    payload = {
        "external_reference": external_reference,
        "amount": int(amount),
        "phone_number": normalize_phone(phone),
        "network_code": settings.PAYHERO_NETWORK_CODE,
        "channel": "mobile",
        "channel_id": settings.PAYHERO_WALLET_CHANNEL_ID,
        "payment_service": "b2c",
    }
    return _request("POST", "/api/v2/withdraw", json=payload)


def transaction_status(reference: str) -> str:
    data = _request("GET", "/api/v2/transaction-status", params={"reference": reference})
    return str(data.get("status") or "").upper()


def service_wallet_balance() -> float:
    """Balance of the service wallet that provider fees are charged against."""
    data = _request("GET", "/api/v2/wallets", params={"wallet_type": "service_wallet"})
    return float(data.get("available_balance") or 0)


TRANSACTION_FILTERS = ("page", "per_page", "status", "start_date", "end_date")


def transactions(filters: Dict[str, Any]) -> Dict[str, Any]:
    # only known filters are forwarded to the provider
    params = {key: filters[key] for key in TRANSACTION_FILTERS if filters.get(key) not in (None, "")}
    return _request("GET", "/api/v2/transactions", params=params)


def topup(amount: int, phone: str) -> Dict[str, Any]:
    payload = {"amount": int(amount), "phone_number": normalize_phone(phone)}
    return _request("POST", "/api/v2/topup", json=payload)
