"""
Payment Gateway Adapter.

Thin client over the payment gateway REST API (charges, payouts, status
queries and refunds). Supports both sandbox and production environments.

The HTTP calls are synchronous (requests with a urllib3 retry adapter);
the escrow core uses the ``async`` wrappers, which run each call in the
default executor and bound it with ``asyncio.wait_for`` so that a slow
gateway is treated as failed instead of hanging the caller.

A ``GatewayUnavailable`` from a create call does not mean the gateway
refused it; callers look the charge or transfer up by external reference
(``find_charge`` / ``find_payout``) before sending it again.

Example:
    >>> gateway = PaymentGateway(get_config())
    >>> charge = await gateway.create_charge(payer, Decimal('1050.00'), 'PIX', 'TXN-2026-7Q2K')
    >>> print(charge['gateway_id'], charge['instructions']['invoice_url'])
"""

import asyncio
import functools
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional, Any, Callable

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import Config
from utils import utcnow, mask_sensitive_data, only_digits

logger = logging.getLogger(__name__)

# Constants
MAX_RETRIES = 3
RETRY_DELAY = 2
CHARGE_DUE_DAYS = 2

BILLING_TYPES = {
    'PIX': 'PIX',
    'CARD': 'CREDIT_CARD',
    'BOLETO': 'BOLETO',
}

# Gateway charge status -> internal payment status
CHARGE_STATUS_MAP = {
    'PENDING': 'PENDING',
    'AWAITING_RISK_ANALYSIS': 'PENDING',
    'RECEIVED': 'SUCCEEDED',
    'CONFIRMED': 'SUCCEEDED',
    'RECEIVED_IN_CASH': 'SUCCEEDED',
    'OVERDUE': 'FAILED',
    'REFUNDED': 'REFUNDED',
    'REFUND_REQUESTED': 'REFUNDED',
    'CHARGEBACK_REQUESTED': 'REFUNDED',
}

TRANSFER_STATUS_MAP = {
    'PENDING': 'PENDING',
    'BANK_PROCESSING': 'PENDING',
    'DONE': 'SUCCEEDED',
    'CANCELLED': 'FAILED',
    'FAILED': 'FAILED',
}


class GatewayError(Exception):
    """Base exception for payment gateway errors."""
    status_code = 502
    code = 'GatewayError'


class GatewayUnavailable(GatewayError):
    """Raised when the gateway cannot be reached or does not answer in time."""
    code = 'GatewayUnavailable'


def map_gateway_status(gateway_status: Optional[str]) -> str:
    """
    Map a gateway charge status to the internal payment status.

    Example:
        >>> map_gateway_status('RECEIVED_IN_CASH')
        'SUCCEEDED'
        >>> map_gateway_status('DUNNING_REQUESTED')
        'PENDING'
    """
    return CHARGE_STATUS_MAP.get((gateway_status or '').upper(), 'PENDING')


def map_transfer_status(gateway_status: Optional[str]) -> str:
    """Map a gateway transfer status to the internal payment status."""
    return TRANSFER_STATUS_MAP.get((gateway_status or '').upper(), 'PENDING')


def _get_session_with_retry() -> requests.Session:
    """
    Create a requests session with automatic retry logic.

    Only idempotent methods are retried at the transport level; charge and
    transfer creation are POSTs and fail fast.

    Returns:
        requests.Session: Configured session with retry adapter.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=MAX_RETRIES,
        backoff_factor=RETRY_DELAY,
        status_forcelist=[408, 429, 500, 502, 503, 504],
        allowed_methods=["GET", "DELETE"],
        raise_on_status=False
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


class PaymentGateway:
    """
    Payment gateway client.

    Attributes:
        base_url: Gateway API base URL for the configured environment
        timeout: Per-call budget in seconds
    """

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        self.base_url = config.gateway_base_url.rstrip('/')
        self.api_key = config.gateway_api_key
        self.timeout = config.gateway_timeout
        self.environment = config.gateway_environment
        self.user_agent = f"{config.app_name}/{config.app_version}"
        self.session = session or _get_session_with_retry()
        logger.info(f"PaymentGateway initialized ({self.environment})")

    # ==================== HTTP ====================

    def _request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Perform one API call.

        Raises:
            GatewayUnavailable: On connection errors, timeouts and 5xx answers
            GatewayError: When the gateway rejects the request
        """
        url = f"{self.base_url}{endpoint}"
        headers = {
            'Content-Type': 'application/json',
            'access_token': self.api_key,
            'User-Agent': self.user_agent,
        }

        try:
            response = self.session.request(
                method,
                url,
                json=payload,
                params=params,
                headers=headers,
                timeout=self.timeout
            )

            if response.status_code >= 500:
                logger.error(f"Gateway {method} {endpoint} failed: {response.status_code}")
                raise GatewayUnavailable(f"Gateway error: HTTP {response.status_code}")

            if not response.ok:
                logger.error(
                    f"Gateway {method} {endpoint} rejected: "
                    f"{response.status_code} - {response.text[:500]}"
                )
                raise GatewayError(f"Gateway rejected request: HTTP {response.status_code}")

            return response.json() if response.content else {}

        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error calling gateway {endpoint}: {e}")
            raise GatewayUnavailable(f"Connection error: {e}") from e

        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout calling gateway {endpoint}: {e}")
            raise GatewayUnavailable(f"Request timeout: {e}") from e

        except requests.exceptions.RequestException as e:
            logger.error(f"Request error calling gateway {endpoint}: {e}")
            raise GatewayUnavailable(f"Request failed: {e}") from e

        except ValueError as e:
            logger.error(f"Invalid JSON from gateway {endpoint}: {e}")
            raise GatewayError(f"Invalid gateway response: {e}") from e

    async def _call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking call in the executor, bounded by the gateway timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Gateway call {func.__name__} exceeded {self.timeout}s")
            raise GatewayUnavailable(f"Gateway call timed out after {self.timeout}s") from e

    # ==================== CUSTOMERS ====================

    def get_or_create_customer(self, party: Dict[str, Any]) -> str:
        """
        Find the gateway customer for a party by tax id, creating it if needed.

        Args:
            party: Profile mapping with ``id``, ``full_name``, ``email``, ``tax_id``

        Returns:
            Gateway customer id
        """
        tax_id = only_digits(party.get('tax_id'))
        existing = self._request('GET', '/customers', params={'cpfCnpj': tax_id})
        if existing.get('data'):
            return existing['data'][0]['id']

        logger.info(f"Creating gateway customer for tax id {mask_sensitive_data(tax_id)}")
        customer = self._request('POST', '/customers', payload={
            'name': party.get('full_name') or party.get('email') or str(party.get('id')),
            'email': party.get('email'),
            'cpfCnpj': tax_id,
            'externalReference': str(party.get('id')),
        })
        return customer['id']

    # ==================== CHARGES ====================

    def create_charge_sync(
        self,
        payer: Dict[str, Any],
        amount: Decimal,
        method: str,
        reference: str,
        description: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a charge against the payer.

        Args:
            payer: Payer profile (must carry a tax id)
            amount: Charge amount
            method: PIX, CARD or BOLETO
            reference: Our transaction code (external reference)
            description: Free text shown on the invoice

        Returns:
            Dict with ``gateway_id``, ``status`` and ``instructions``

        Raises:
            ValueError: If the method is unknown
            GatewayError: If the gateway rejects the charge
        """
        billing_type = BILLING_TYPES.get(method)
        if not billing_type:
            raise ValueError(f"Unsupported payment method: {method}")

        customer_id = self.get_or_create_customer(payer)
        due_date = (utcnow() + timedelta(days=CHARGE_DUE_DAYS)).date().isoformat()

        logger.info(f"Creating {billing_type} charge for {reference}: {amount}")
        charge = self._request('POST', '/payments', payload={
            'customer': customer_id,
            'billingType': billing_type,
            'value': float(amount),
            'dueDate': due_date,
            'description': description or f"Reservation transfer {reference}",
            'externalReference': reference,
        })

        charge.setdefault('billingType', billing_type)
        charge.setdefault('dueDate', due_date)

        logger.info(f"Charge created for {reference}: {charge['id']}")
        return self._charge_result(charge)

    def _charge_result(self, charge: Dict[str, Any]) -> Dict[str, Any]:
        """Shape a gateway charge, fetching the PIX code when it applies."""
        instructions: Dict[str, Any] = {
            'invoice_url': charge.get('invoiceUrl'),
            'bank_slip_url': charge.get('bankSlipUrl'),
            'due_date': charge.get('dueDate'),
        }

        if charge.get('billingType') == 'PIX':
            try:
                qr_code = self._request('GET', f"/payments/{charge['id']}/pixQrCode")
                instructions['pix_qr_code'] = qr_code.get('encodedImage')
                instructions['pix_copy_paste'] = qr_code.get('payload')
                instructions['pix_expiration'] = qr_code.get('expirationDate')
            except GatewayError as e:
                # The charge exists; the invoice URL still lets the buyer pay.
                logger.warning(f"PIX QR code unavailable for {charge['id']}: {e}")

        return {
            'gateway_id': charge['id'],
            'status': map_gateway_status(charge.get('status')),
            'instructions': instructions,
        }

    def find_charge_sync(self, reference: str) -> Optional[Dict[str, Any]]:
        """
        Look up a live charge by our external reference.

        Used when a create call timed out and may or may not have been
        accepted.

        Returns:
            Same shape as ``create_charge_sync``, or None when the gateway
            holds no live charge for the reference
        """
        found = self._request('GET', '/payments', params={'externalReference': reference})
        for charge in found.get('data') or []:
            if charge.get('deleted') or charge.get('externalReference') != reference:
                continue
            logger.info(f"Found charge {charge['id']} for {reference}")
            return self._charge_result(charge)
        return None

    def cancel_charge_sync(self, gateway_id: str) -> bool:
        """Remove an unpaid charge so it can no longer be paid."""
        logger.info(f"Cancelling charge {gateway_id}")
        result = self._request('DELETE', f"/payments/{gateway_id}")
        return bool(result.get('deleted', True))

    def get_status_sync(self, gateway_id: str) -> Dict[str, Any]:
        """
        Query a charge.

        Returns:
            Dict with ``gateway_status`` (raw) and ``status`` (mapped)
        """
        charge = self._request('GET', f"/payments/{gateway_id}")
        return {
            'gateway_status': charge.get('status'),
            'status': map_gateway_status(charge.get('status')),
        }

    def refund_charge_sync(self, gateway_id: str, amount: Optional[Decimal] = None) -> Dict[str, Any]:
        """Refund a charge in full, or partially when ``amount`` is given."""
        payload = {'value': float(amount)} if amount is not None else {}
        logger.info(f"Refunding charge {gateway_id}")
        refund = self._request('POST', f"/payments/{gateway_id}/refund", payload=payload)
        return {
            'gateway_status': refund.get('status'),
            'status': map_gateway_status(refund.get('status')),
        }

    # ==================== PAYOUTS ====================

    def create_payout_sync(self, payee: Dict[str, Any], amount: Decimal, reference: str) -> Dict[str, Any]:
        """
        Transfer funds to the payee over PIX, keyed by the payee's tax id.

        Returns:
            Dict with ``gateway_id`` and ``status``
        """
        tax_id = only_digits(payee.get('tax_id'))
        if not tax_id:
            raise GatewayError(f"Payee {payee.get('id')} has no tax id for payout")

        logger.info(f"Creating payout for {reference}: {amount} to {mask_sensitive_data(tax_id)}")
        transfer = self._request('POST', '/transfers', payload={
            'value': float(amount),
            'operationType': 'PIX',
            'pixAddressKey': tax_id,
            'pixAddressKeyType': 'CPF',
            'description': f"Payout {reference}",
            'externalReference': reference,
        })
        return {
            'gateway_id': transfer['id'],
            'status': map_transfer_status(transfer.get('status')),
        }

    def find_payout_sync(self, reference: str) -> Optional[Dict[str, Any]]:
        """
        Look up a transfer by our external reference.

        Transfers the gateway already failed or cancelled are skipped, so a
        None result means a new transfer is safe to send.
        """
        found = self._request('GET', '/transfers', params={'externalReference': reference})
        for transfer in found.get('data') or []:
            if transfer.get('externalReference') != reference:
                continue
            status = map_transfer_status(transfer.get('status'))
            if status == 'FAILED':
                continue
            logger.info(f"Found transfer {transfer['id']} for {reference}")
            return {'gateway_id': transfer['id'], 'status': status}
        return None

    def ping_sync(self) -> bool:
        self._request('GET', '/finance/balance')
        return True

    # ==================== ASYNC API ====================

    async def create_charge(
        self,
        payer: Dict[str, Any],
        amount: Decimal,
        method: str,
        reference: str,
        description: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._call(self.create_charge_sync, payer, amount, method, reference, description)

    async def create_payout(self, payee: Dict[str, Any], amount: Decimal, reference: str) -> Dict[str, Any]:
        return await self._call(self.create_payout_sync, payee, amount, reference)

    async def get_status(self, gateway_id: str) -> Dict[str, Any]:
        return await self._call(self.get_status_sync, gateway_id)

    async def refund_charge(self, gateway_id: str, amount: Optional[Decimal] = None) -> Dict[str, Any]:
        return await self._call(self.refund_charge_sync, gateway_id, amount)

    async def find_charge(self, reference: str) -> Optional[Dict[str, Any]]:
        return await self._call(self.find_charge_sync, reference)

    async def cancel_charge(self, gateway_id: str) -> bool:
        return await self._call(self.cancel_charge_sync, gateway_id)

    async def find_payout(self, reference: str) -> Optional[Dict[str, Any]]:
        return await self._call(self.find_payout_sync, reference)

    async def ping(self) -> bool:
        return await self._call(self.ping_sync)
