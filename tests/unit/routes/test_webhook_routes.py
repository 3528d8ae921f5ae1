"""
Tests for the provider webhook endpoints
"""

import hashlib
import hmac
import json

from extensions import db
from flowstack_database import Conversation, Message, PaymentIntent
from services.whatsapp_client import WhatsAppClient
from tests.conftest import create_test_intent


def _whatsapp_payload(message_id='wamid.W1', from_phone='254733000001', body='Hello there'):
    return {
        'object': 'whatsapp_business_account',
        'entry': [{'changes': [{'field': 'messages', 'value': {
            'metadata': {'display_phone_number': '254700000001', 'phone_number_id': '1098765'},
            'contacts': [{'profile': {'name': 'Achieng'}, 'wa_id': from_phone}],
            'messages': [{
                'from': from_phone, 'id': message_id, 'timestamp': '1700000000',
                'type': 'text', 'text': {'body': body},
            }],
        }}]}],
    }


class TestWhatsAppVerification:

    def test_handshake_echoes_challenge(self, client):
        response = client.get('/webhooks/whatsapp', query_string={
            'hub.mode': 'subscribe', 'hub.verify_token': 'test-verify-token', 'hub.challenge': '1158201444'
        })

        assert response.status_code == 200
        assert response.get_data(as_text=True) == '1158201444'

    def test_wrong_token_is_forbidden(self, client):
        response = client.get('/webhooks/whatsapp', query_string={
            'hub.mode': 'subscribe', 'hub.verify_token': 'nope', 'hub.challenge': '1'
        })

        assert response.status_code == 403


class TestWhatsAppInbound:

    def test_inbound_message_is_stored(self, client, business):
        response = client.post('/webhooks/whatsapp', json=_whatsapp_payload())

        assert response.status_code == 200
        assert response.get_json() == {'status': 'ok', 'processed': 1}
        conversation = db.session.query(Conversation).filter_by(customer_phone='254733000001').one()
        assert conversation.customer_name == 'Achieng'
        assert db.session.query(Message).count() == 1

    def test_unknown_business_is_acknowledged(self, client):
        response = client.post('/webhooks/whatsapp', json=_whatsapp_payload())

        assert response.status_code == 200
        assert response.get_json()['processed'] == 0

    def test_status_only_delivery(self, client, business):
        payload = {'entry': [{'changes': [{'value': {'statuses': [{'id': 'wamid.X', 'status': 'delivered'}]}}]}]}

        response = client.post('/webhooks/whatsapp', json=payload)

        assert response.status_code == 200
        assert response.get_json()['processed'] == 0

    def test_bad_signature_is_rejected(self, client, services, business):
        services.register('whatsapp', WhatsAppClient(app_secret='s3cret'))
        body = json.dumps(_whatsapp_payload()).encode()

        rejected = client.post('/webhooks/whatsapp', data=body, content_type='application/json',
                               headers={'X-Hub-Signature-256': 'sha256=bogus'})
        signature = 'sha256=' + hmac.new(b's3cret', body, hashlib.sha256).hexdigest()
        accepted = client.post('/webhooks/whatsapp', data=body, content_type='application/json',
                               headers={'X-Hub-Signature-256': signature})

        assert rejected.status_code == 403
        assert accepted.status_code == 200


class TestMPesaCallback:

    def test_callback_marks_intent_paid(self, client, conversation):
        intent = create_test_intent(conversation, status='pending', provider_reference='ws_CO_900')
        payload = {'Body': {'stkCallback': {
            'MerchantRequestID': '1', 'CheckoutRequestID': 'ws_CO_900', 'ResultCode': 0,
            'ResultDesc': 'The service request is processed successfully.',
            'CallbackMetadata': {'Item': [{'Name': 'MpesaReceiptNumber', 'Value': 'NLJ7RT61SV'}]},
        }}}

        response = client.post('/webhooks/mpesa', json=payload)

        assert response.status_code == 200
        assert response.get_json() == {'ResultCode': 0, 'ResultDesc': 'Accepted'}
        assert db.session.get(PaymentIntent, intent.id).status == 'paid'

    def test_garbage_is_still_acknowledged(self, client):
        response = client.post('/webhooks/mpesa', data='not json', content_type='text/plain')

        assert response.status_code == 200
        assert response.get_json()['ResultCode'] == 0
