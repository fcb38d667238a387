"""
Common interface for payment rails.

Adapters translate a generic :class:`ProviderRequest` into their own wire
protocol and report back a :class:`ProviderResult`. They never touch the
ledger or the booking; the payment service applies the outcome.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..exceptions import ProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


@dataclass
class ProviderRequest:
    amount: Decimal
    currency: str
    payer_reference: str
    transaction_reference: str
    booking_id: str
    description: str = ''
    destination_account: Optional[str] = None
    application_fee: Optional[Decimal] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResult:
    """
    Outcome of a submission.

    ``pending`` means the rail accepted the request but the funds are not
    confirmed yet (manual rails, test mode); ``confirm_after`` asks the
    caller to schedule a confirmation that many seconds later.
    """
    success: bool
    provider_txn_id: str = ''
    raw_response: Optional[Dict[str, Any]] = None
    error_message: str = ''
    retryable: bool = False
    pending: bool = False
    confirm_after: Optional[int] = None
    instructions: str = ''
    test_mode: bool = False


@dataclass
class RefundResult:
    success: bool
    refund_reference: str = ''
    raw_response: Optional[Dict[str, Any]] = None
    error_message: str = ''


class PaymentProvider:
    """Base class every adapter implements."""

    name = ''
    supports_refunds = False

    def submit(self, request: ProviderRequest) -> ProviderResult:
        raise NotImplementedError

    def refund(self, provider_txn_id: str, amount: Decimal, currency: str,
               reference: str, reason: str = '') -> RefundResult:
        raise NotImplementedError(f"{self.name} does not support push refunds")

    @property
    def test_mode(self) -> bool:
        return False


def provider_timeout() -> int:
    return int(settings.SETTLEMENT.get('PROVIDER_TIMEOUT', 30))


class HttpProviderMixin:
    """
    ``requests`` session with bounded, exponentially backed-off retries.

    Connection errors, timeouts and 429/5xx responses are retried by urllib3
    and, once retries are exhausted, surface as retryable ProviderErrors.
    Other 4xx responses are terminal.
    """

    base_url = ''
    _session = None

    def _build_session(self) -> requests.Session:
        conf = settings.SETTLEMENT
        retry = Retry(
            total=int(conf.get('PROVIDER_MAX_RETRIES', 3)),
            backoff_factor=float(conf.get('PROVIDER_BACKOFF_FACTOR', 0.5)),
            status_forcelist=RETRYABLE_STATUS_CODES,
            allowed_methods=None,
            raise_on_status=False,
        )
        session = requests.Session()
        session.mount('https://', HTTPAdapter(max_retries=retry))
        session.mount('http://', HTTPAdapter(max_retries=retry))
        return session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = self._build_session()
        return self._session

    def _get_headers(self) -> Dict[str, str]:
        return {'Content-Type': 'application/json'}

    def _make_request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make an HTTP request to the provider API

        Args:
            method: HTTP method (GET, POST)
            endpoint: Path appended to ``base_url``
            data: Request payload

        Returns:
            Decoded JSON response

        Raises:
            ProviderError: retryable for network errors and 5xx, terminal for 4xx
        """
        url = f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        try:
            if method.upper() == 'GET':
                response = self.session.get(url, headers=self._get_headers(), params=data, timeout=provider_timeout())
            elif method.upper() == 'POST':
                response = self.session.post(url, headers=self._get_headers(), json=data, timeout=provider_timeout())
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
                requests.exceptions.RetryError) as e:
            logger.warning(f"{self.name} request to {endpoint} failed after retries: {str(e)}")
            raise ProviderError(str(e), retryable=True, provider=self.name)
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.name} request to {endpoint} failed: {str(e)}")
            raise ProviderError(str(e), retryable=False, provider=self.name)

        try:
            body = response.json()
        except ValueError:
            body = {'raw': response.text}

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"{self.name} returned {response.status_code} for {endpoint}")
            raise ProviderError(
                f"HTTP {response.status_code}", retryable=True, raw_response=body, provider=self.name
            )
        if response.status_code >= 400:
            logger.error(f"{self.name} rejected {endpoint} with {response.status_code}: {body}")
            raise ProviderError(
                f"HTTP {response.status_code}", retryable=False, raw_response=body, provider=self.name
            )
        return body
