"""
End-to-end: a WhatsApp lead becomes a paid conversation through the HTTP
surface, with every side effect checked against the database.
"""

from unittest.mock import Mock

from extensions import db
from flowstack_database import Conversation, Event, FollowUpTask, Message
from services.enums import EventType, FollowUpStatus


def _inbound(message_id, body):
    return {
        'object': 'whatsapp_business_account',
        'entry': [{'changes': [{'field': 'messages', 'value': {
            'metadata': {'display_phone_number': '254700000001', 'phone_number_id': '1098765'},
            'contacts': [{'profile': {'name': 'Njeri'}, 'wa_id': '254722555000'}],
            'messages': [{
                'from': '254722555000', 'id': message_id, 'timestamp': '1700000000',
                'type': 'text', 'text': {'body': body},
            }],
        }}]}],
    }


def _daraja_responses(mocker, checkout_request_id):
    token = Mock(ok=True, status_code=200)
    token.json.return_value = {'access_token': 'tok', 'expires_in': '3599'}
    stk = Mock(ok=True, status_code=200, text='{}')
    stk.json.return_value = {'CheckoutRequestID': checkout_request_id, 'ResponseCode': '0',
                             'ResponseDescription': 'Success. Request accepted for processing'}
    mocker.patch('services.mpesa_connector.requests.get', return_value=token)
    mocker.patch('services.mpesa_connector.requests.post', return_value=stk)


class TestLeadToPayment:

    def test_lead_is_converted_and_paid(self, client, services, business, dispatched, mocker):
        follow_up = services.get('follow_up')

        # 1. First message creates the lead and queues the welcome message
        assert client.post('/webhooks/whatsapp', json=_inbound('wamid.A', 'Hi, price for 5kg sukuma?')).status_code == 200
        conversation = db.session.query(Conversation).filter_by(customer_phone='254722555000').one()
        assert conversation.current_state == 'NEW_LEAD'
        welcome = db.session.query(FollowUpTask).filter_by(message_template_key='welcome').one()
        assert follow_up.process_follow_up(welcome.id).value == 'sent'

        # 2. The customer writes again and is engaged
        client.post('/webhooks/whatsapp', json=_inbound('wamid.B', 'And delivery to Ruaka?'))
        assert db.session.get(Conversation, conversation.id).current_state == 'ENGAGED'

        # 3. Staff request a payment
        response = client.post(f'/api/conversations/{conversation.id}/payments',
                               json={'amount': '1500', 'description': 'Sukuma 5kg + delivery'})
        assert response.status_code == 201
        intent_id = response.get_json()['id']
        assert db.session.get(Conversation, conversation.id).current_state == 'WAITING_FOR_PAYMENT'
        reminder = db.session.query(FollowUpTask).filter_by(message_template_key='payment_reminder').one()
        assert reminder.payment_intent_id == intent_id

        # 4. STK push, then Daraja confirms
        _daraja_responses(mocker, 'ws_CO_E2E')
        pushed = client.post(f'/api/payments/{intent_id}/stk-push').get_json()
        assert pushed['status'] == 'pending'

        callback = {'Body': {'stkCallback': {
            'MerchantRequestID': '1', 'CheckoutRequestID': 'ws_CO_E2E', 'ResultCode': 0,
            'ResultDesc': 'The service request is processed successfully.',
            'CallbackMetadata': {'Item': [
                {'Name': 'Amount', 'Value': 1500}, {'Name': 'MpesaReceiptNumber', 'Value': 'QAB12CD34E'},
            ]},
        }}}
        assert client.post('/webhooks/mpesa', json=callback).status_code == 200

        # Conversation and intent agree
        assert db.session.get(Conversation, conversation.id).current_state == 'PAID'
        intent = client.get(f'/api/payments/{intent_id}').get_json()
        assert intent['status'] == 'paid'
        assert intent['provider_transaction_id'] == 'QAB12CD34E'

        # NEW_LEAD -> ENGAGED -> WAITING_FOR_PAYMENT -> PAID
        history = client.get(f'/api/conversations/{conversation.id}/history').get_json()['transitions']
        assert [t['to_state'] for t in history] == ['PAID', 'WAITING_FOR_PAYMENT', 'ENGAGED']

        # The pending reminder is gone, the confirmation is queued and delivers once
        assert db.session.get(FollowUpTask, reminder.id).status == FollowUpStatus.CANCELLED.value
        confirmation = db.session.query(FollowUpTask).filter_by(message_template_key='payment_confirmed').one()
        assert follow_up.process_follow_up(confirmation.id).value == 'sent'
        assert follow_up.process_follow_up(confirmation.id).value == 'skipped'

        # Event log tells the same story, in order
        events = client.get(f'/api/conversations/{conversation.id}/events').get_json()['events']
        types = [e['event_type'] for e in events]
        assert types.index(EventType.NEW_LEAD.value) < types.index(EventType.PAYMENT_INITIATED.value) \
            < types.index(EventType.PAYMENT_CONFIRMED.value)
        assert types.count(EventType.FOLLOW_UP_SENT.value) == 2
        assert [e['event_id'] for e in events] == sorted(e['event_id'] for e in events)

        outbound = db.session.query(Message).filter_by(conversation_id=conversation.id, direction='outbound').count()
        assert outbound == 2
        assert db.session.get(Conversation, conversation.id).follow_up_count == 2

    def test_late_failure_does_not_undo_payment(self, client, services, business, mocker):
        client.post('/webhooks/whatsapp', json=_inbound('wamid.C', 'Hello'))
        conversation = db.session.query(Conversation).one()
        services.get('state_machine').transition_to(conversation.id, 'ENGAGED', 'customer_replied')
        intent_id = client.post(f'/api/conversations/{conversation.id}/payments',
                                json={'amount': 200}).get_json()['id']
        _daraja_responses(mocker, 'ws_CO_LATE')
        client.post(f'/api/payments/{intent_id}/stk-push')

        def callback(code, desc):
            return {'Body': {'stkCallback': {'CheckoutRequestID': 'ws_CO_LATE', 'ResultCode': code,
                                             'ResultDesc': desc}}}

        client.post('/webhooks/mpesa', json=callback(0, 'ok'))
        client.post('/webhooks/mpesa', json=callback(1032, 'Request cancelled by user'))

        assert client.get(f'/api/payments/{intent_id}').get_json()['status'] == 'paid'
        assert db.session.query(Event).filter_by(event_type=EventType.PAYMENT_FAILED.value).count() == 0
