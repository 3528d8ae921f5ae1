"""
MPesaConnector - Safaricom Daraja (Lipa na M-Pesa Online) integration

The connector never writes payment status itself. It talks to Daraja,
validates what comes back and hands the outcome to PaymentIntentService.
"""

import base64
import time
import uuid
from decimal import Decimal, ROUND_CEILING
from typing import Any, Dict, Optional

import requests
from requests.auth import HTTPBasicAuth

from flowstack_database import PaymentIntent
from services.common.errors import (
    FlowStackError,
    InvalidTransitionError,
    PaymentProviderError,
)
from services.common.result import Result
from services.enums import PaymentIntentStatus
from services.payment_intent_service import (
    FailedDetails,
    PaidDetails,
    PaymentIntentService,
    PendingDetails,
)
from utils.datetime_utils import utc_now, utc_to_local
from logging_config import get_logger, performance_logger

logger = get_logger(__name__)

BASE_URLS = {
    'production': 'https://api.safaricom.co.ke',
    'sandbox': 'https://sandbox.safaricom.co.ke',
}


class MPesaConnector:
    """STK push initiation, callback handling and status queries"""

    def __init__(self, payment_service: PaymentIntentService,
                 consumer_key: Optional[str] = None, consumer_secret: Optional[str] = None,
                 shortcode: Optional[str] = None, passkey: Optional[str] = None,
                 environment: str = 'sandbox', callback_url: Optional[str] = None):
        self.payment_service = payment_service
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.environment = environment
        self.base_url = BASE_URLS.get(environment, BASE_URLS['sandbox'])
        self.callback_url = callback_url
        self.timeout = (5, 30)

    @property
    def mock_mode(self) -> bool:
        return not (self.consumer_key and self.consumer_secret)

    def get_access_token(self) -> str:
        """
        Fetch an OAuth token with the consumer key/secret.

        Raises:
            PaymentProviderError: Daraja is unreachable or refused the credentials
        """
        url = f"{self.base_url}/oauth/v1/generate"
        try:
            response = requests.get(
                url,
                params={'grant_type': 'client_credentials'},
                auth=HTTPBasicAuth(self.consumer_key, self.consumer_secret),
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()['access_token']
        except requests.exceptions.RequestException as e:
            status_code = getattr(e.response, 'status_code', None) if e.response is not None else None
            logger.error("M-Pesa token request failed", status_code=status_code, error=str(e))
            raise PaymentProviderError(f"M-Pesa token request failed: {e}", status_code=status_code) from e
        except (ValueError, KeyError) as e:
            raise PaymentProviderError("Unexpected M-Pesa token response") from e

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}".encode('utf-8')
        return base64.b64encode(raw).decode('ascii')

    @staticmethod
    def _timestamp() -> str:
        # Daraja expects the timestamp in East Africa Time
        return utc_to_local(utc_now(), 'Africa/Nairobi').strftime('%Y%m%d%H%M%S')

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        token = self.get_access_token()
        started = time.monotonic()
        try:
            response = requests.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'},
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error("M-Pesa request failed", path=path, error=str(e))
            raise PaymentProviderError(f"M-Pesa request failed: {e}") from e

        performance_logger.log_api_call('mpesa', path, (time.monotonic() - started) * 1000, response.status_code)
        try:
            data = response.json()
        except ValueError as e:
            raise PaymentProviderError(
                "Unexpected M-Pesa response",
                status_code=response.status_code,
                response_body=response.text
            ) from e
        if not response.ok:
            raise PaymentProviderError(
                data.get('errorMessage') or f"M-Pesa API error: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text
            )
        return data

    def initiate_payment(self, intent_id: int, phone_number: str) -> PaymentIntent:
        """
        Send an STK push for an initiated intent and mark it pending.

        Args:
            intent_id: Payment intent to collect
            phone_number: Customer's M-Pesa number (2547XXXXXXXX)

        Returns:
            The intent, now pending with the CheckoutRequestID as reference

        Raises:
            InvalidTransitionError: The intent is not in initiated status
            PaymentProviderError: Daraja failed or rejected the request
        """
        intent = self.payment_service.get_intent(intent_id)
        if intent.status != PaymentIntentStatus.INITIATED.value:
            raise InvalidTransitionError(
                f"Payment intent {intent_id} is {intent.status}, STK push needs an initiated intent"
            )
        phone_number = phone_number.lstrip('+')

        if self.mock_mode:
            checkout_request_id = f"ws_CO_mock_{uuid.uuid4().hex[:16]}"
            logger.info("M-Pesa STK push (mock)", payment_intent_id=intent_id, checkout_request_id=checkout_request_id)
        else:
            timestamp = self._timestamp()
            amount = int(Decimal(intent.expected_amount).to_integral_value(rounding=ROUND_CEILING))
            data = self._post('/mpesa/stkpush/v1/processrequest', {
                'BusinessShortCode': self.shortcode,
                'Password': self._password(timestamp),
                'Timestamp': timestamp,
                'TransactionType': 'CustomerPayBillOnline',
                'Amount': amount,
                'PartyA': phone_number,
                'PartyB': self.shortcode,
                'PhoneNumber': phone_number,
                'CallBackURL': f"{self.callback_url}/webhooks/mpesa",
                'AccountReference': f"FS{intent.id}",
                'TransactionDesc': (intent.description or 'Payment for services')[:100],
            })
            if str(data.get('ResponseCode')) != '0':
                raise PaymentProviderError(f"M-Pesa error: {data.get('ResponseDescription')}")
            checkout_request_id = data['CheckoutRequestID']
            logger.info("M-Pesa STK push initiated", payment_intent_id=intent_id, checkout_request_id=checkout_request_id)

        return self.payment_service.update_status(
            intent_id, PaymentIntentStatus.PENDING, PendingDetails(provider_reference=checkout_request_id)
        )

    def handle_callback(self, payload: Dict[str, Any]) -> Result[PaymentIntent]:
        """
        Process an STK callback body.

        Never raises; the webhook route acknowledges Daraja regardless and
        uses the Result only for logging.
        """
        try:
            callback = payload['Body']['stkCallback']
            checkout_request_id = callback['CheckoutRequestID']
            result_code = int(callback['ResultCode'])
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed M-Pesa callback", payload_keys=list((payload or {}).keys()))
            return Result.failure("Malformed M-Pesa callback", code='ValidationError')

        intent = self.payment_service.find_by_provider_reference(checkout_request_id)
        if intent is None:
            logger.warning("M-Pesa callback for unknown checkout request", checkout_request_id=checkout_request_id)
            return Result.failure(f"Unknown checkout request {checkout_request_id}", code='NotFound')

        metadata = {
            item.get('Name'): item.get('Value')
            for item in (callback.get('CallbackMetadata') or {}).get('Item', []) or []
            if item.get('Name')
        }
        metadata['ResultCode'] = result_code

        try:
            if result_code == 0:
                details = PaidDetails(
                    provider_transaction_id=str(metadata.get('MpesaReceiptNumber') or ''),
                    provider_metadata=metadata
                )
                intent = self.payment_service.update_status(intent.id, PaymentIntentStatus.PAID, details)
            else:
                details = FailedDetails(reason=callback.get('ResultDesc') or f"Result code {result_code}",
                                        provider_metadata=metadata)
                intent = self.payment_service.update_status(intent.id, PaymentIntentStatus.FAILED, details)
        except FlowStackError as e:
            logger.warning(
                "M-Pesa callback not applied",
                checkout_request_id=checkout_request_id,
                error_kind=e.kind,
                error=e.message
            )
            return Result.from_error(e)

        return Result.success(intent, metadata={'result_code': result_code})


    def query_payment_status(self, intent_id: int) -> PaymentIntent:
        """
        Ask Daraja for the outcome of a pending STK push and apply it.

        Covers callbacks that never arrived. In mock mode the intent is
        returned unchanged.

        Raises:
            InvalidTransitionError: The intent has no STK push awaiting an outcome
            PaymentProviderError: Daraja failed, or is still processing the push
        """
        intent = self.payment_service.get_intent(intent_id)
        if intent.status != PaymentIntentStatus.PENDING.value or not intent.provider_reference:
            raise InvalidTransitionError(
                f"Payment intent {intent_id} is {intent.status}, nothing to query"
            )
        checkout_request_id = intent.provider_reference

        if self.mock_mode:
            logger.info("M-Pesa status query (mock)", payment_intent_id=intent_id,
                        checkout_request_id=checkout_request_id)
            return intent

        timestamp = self._timestamp()
        data = self._post('/mpesa/stkpushquery/v1/query', {
            'BusinessShortCode': self.shortcode,
            'Password': self._password(timestamp),
            'Timestamp': timestamp,
            'CheckoutRequestID': checkout_request_id,
        })
        try:
            result_code = int(data['ResultCode'])
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentProviderError("Unexpected M-Pesa status response", response_body=str(data)) from e

        metadata = {'ResultCode': result_code, 'ResultDesc': data.get('ResultDesc')}
        logger.info("M-Pesa status query", payment_intent_id=intent_id,
                    checkout_request_id=checkout_request_id, result_code=result_code)
        if result_code == 0:
            details = PaidDetails(
                provider_transaction_id=str(data.get('MpesaReceiptNumber') or ''),
                provider_metadata=metadata
            )
            return self.payment_service.update_status(intent_id, PaymentIntentStatus.PAID, details)

        details = FailedDetails(reason=data.get('ResultDesc') or f"Result code {result_code}",
                                provider_metadata=metadata)
        return self.payment_service.update_status(intent_id, PaymentIntentStatus.FAILED, details)
