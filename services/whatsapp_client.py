import hashlib
import hmac
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from services.common.errors import TransportError
from logging_config import get_logger, performance_logger

logger = get_logger(__name__)

GRAPH_API_URL = "https://graph.facebook.com/v18.0"


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str]


@dataclass
class InboundMessage:
    """One customer message extracted from a Cloud API webhook"""
    from_phone: str
    body: str
    message_id: Optional[str]
    message_type: str
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None
    contact_name: Optional[str] = None
    timestamp: Optional[datetime] = None


class WhatsAppClient:
    """
    Thin client for the WhatsApp Cloud API.

    Without an access token the client runs in mock mode: sends are logged
    and answered with a generated message id, so development and tests never
    reach Meta.
    """

    def __init__(self, phone_number_id: Optional[str] = None, access_token: Optional[str] = None,
                 verify_token: Optional[str] = None, app_secret: Optional[str] = None,
                 base_url: str = GRAPH_API_URL):
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.verify_token = verify_token
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = (5, 30)  # Connection timeout, read timeout

    @property
    def mock_mode(self) -> bool:
        return not self.access_token

    def send_message(self, to: str, body: str, from_number: Optional[str] = None) -> SendResult:
        """
        Send a text message.

        Args:
            to: Recipient phone number in international format
            body: Message text
            from_number: Sending business number, used for logging only; the
                Cloud API sends from the configured phone number id

        Returns:
            SendResult with the provider's message id

        Raises:
            TransportError: The API could not be reached or rejected the send
        """
        if self.mock_mode:
            message_id = f"mock-{uuid.uuid4().hex}"
            logger.info(
                "WhatsApp send (mock)",
                from_number=from_number,
                to_number=to[-4:],
                message_length=len(body),
                message_id=message_id
            )
            return SendResult(success=True, message_id=message_id)

        url = f"{self.base_url}/{self.phone_number_id}/messages"
        payload = {
            'messaging_product': 'whatsapp',
            'to': to,
            'type': 'text',
            'text': {'body': body},
        }
        headers = {
            'Authorization': f'Bearer {self.access_token}',
            'Content-Type': 'application/json',
        }

        started = time.monotonic()
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.error("WhatsApp API request timeout", to_number=to[-4:], error=str(e))
            raise TransportError("WhatsApp request timeout") from e
        except requests.exceptions.RequestException as e:
            logger.error("WhatsApp API request failed", to_number=to[-4:], error=str(e))
            raise TransportError(f"WhatsApp request failed: {e}") from e

        performance_logger.log_api_call(
            'whatsapp', 'messages', (time.monotonic() - started) * 1000, response.status_code
        )

        if not response.ok:
            logger.error(
                "WhatsApp API returned an error",
                to_number=to[-4:],
                status_code=response.status_code,
                response_body=response.text[:500]
            )
            raise TransportError(
                f"WhatsApp API error: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text
            )

        try:
            message_id = response.json()['messages'][0]['id']
        except (ValueError, KeyError, IndexError) as e:
            raise TransportError("Unexpected WhatsApp API response", response_body=response.text) from e

        logger.info("WhatsApp message sent", to_number=to[-4:], message_id=message_id)
        return SendResult(success=True, message_id=message_id)

    def verify_webhook(self, mode: Optional[str], token: Optional[str]) -> bool:
        """Check the hub.mode/hub.verify_token pair of a subscription handshake"""
        return mode == 'subscribe' and bool(self.verify_token) and \
            hmac.compare_digest(token or '', self.verify_token)

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """
        Validate X-Hub-Signature-256 against the app secret.

        Always passes when no app secret is configured.
        """
        if not self.app_secret:
            return True
        if not signature_header or not signature_header.startswith('sha256='):
            return False
        expected = hmac.new(self.app_secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature_header[len('sha256='):], expected)

    @staticmethod
    def parse_incoming_messages(payload: Dict[str, Any]) -> List[InboundMessage]:
        """Extract customer messages from a webhook body; status updates are ignored"""
        messages = []
        for entry in (payload or {}).get('entry', []) or []:
            for change in entry.get('changes', []) or []:
                value = change.get('value') or {}
                metadata = value.get('metadata') or {}
                names = {
                    contact.get('wa_id'): (contact.get('profile') or {}).get('name')
                    for contact in value.get('contacts', []) or []
                }
                for message in value.get('messages', []) or []:
                    sender = message.get('from')
                    if not sender:
                        continue
                    timestamp = message.get('timestamp')
                    messages.append(InboundMessage(
                        from_phone=sender,
                        body=(message.get('text') or {}).get('body', ''),
                        message_id=message.get('id'),
                        message_type=message.get('type', 'text'),
                        phone_number_id=metadata.get('phone_number_id'),
                        display_phone_number=metadata.get('display_phone_number'),
                        contact_name=names.get(sender),
                        timestamp=datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
                        if timestamp and str(timestamp).isdigit() else None,
                    ))
        return messages
