"""
PaymentIntentService - lifecycle engine for payment intents

This is the only place a payment intent's status changes. Provider
connectors and the expiry sweep call update_status(); nothing else writes
the status column.

    initiated -> pending | failed | expired
    pending   -> paid | failed | expired
    paid, failed, expired are terminal

Every status write is conditional on the intent still being non-terminal,
so a provider confirmation and an expiry sweep racing on the same row
cannot both win.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union

from flowstack_database import PaymentIntent
from repositories.business_repository import BusinessRepository
from repositories.conversation_repository import ConversationRepository
from repositories.payment_intent_repository import PaymentIntentRepository
from services.common.errors import (
    InvalidTransitionError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from services.enums import EventType, PaymentIntentStatus
from services.event_bus import EventBus
from utils.datetime_utils import utc_now, format_utc_iso
from logging_config import get_logger

logger = get_logger(__name__)

CENTS = Decimal('0.01')


@dataclass(frozen=True)
class PendingDetails:
    """Provider accepted the request; correlate later callbacks by reference"""
    provider_reference: str


@dataclass(frozen=True)
class PaidDetails:
    provider_transaction_id: str
    provider_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FailedDetails:
    reason: str
    provider_metadata: Dict[str, Any] = field(default_factory=dict)


StatusDetails = Union[PendingDetails, PaidDetails, FailedDetails, None]

# Which details structure each target status accepts
DETAILS_BY_STATUS = {
    PaymentIntentStatus.PENDING: PendingDetails,
    PaymentIntentStatus.PAID: PaidDetails,
    PaymentIntentStatus.FAILED: FailedDetails,
    PaymentIntentStatus.EXPIRED: None,
}

STATUS_EVENTS = {
    PaymentIntentStatus.PAID: EventType.PAYMENT_CONFIRMED,
    PaymentIntentStatus.FAILED: EventType.PAYMENT_FAILED,
    PaymentIntentStatus.EXPIRED: EventType.PAYMENT_EXPIRED,
}


def to_amount(value: Any) -> Decimal:
    """
    Coerce an amount to a positive Decimal with two places.

    Floats go through str() so 0.1 stays 0.10 and not its binary expansion.
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    return amount


class PaymentIntentService:
    """Creates payment intents and drives their status"""

    def __init__(self, payment_intent_repository: PaymentIntentRepository,
                 conversation_repository: ConversationRepository,
                 business_repository: BusinessRepository,
                 event_bus: EventBus,
                 default_expiry_hours: int = 48):
        self.payment_intent_repository = payment_intent_repository
        self.conversation_repository = conversation_repository
        self.business_repository = business_repository
        self.event_bus = event_bus
        self.default_expiry_hours = default_expiry_hours

    def create_intent(self, conversation_id: int, amount: Any,
                      expiry_hours: Optional[float] = None,
                      description: Optional[str] = None) -> PaymentIntent:
        """
        Create an intent in 'initiated' and emit PAYMENT_INITIATED.

        Args:
            conversation_id: Conversation the payment belongs to
            amount: Expected amount, positive, stored to the cent
            expiry_hours: Hours until expiry (tenant default when None)
            description: Optional free text shown to the customer

        Raises:
            NotFoundError: Conversation does not exist
            ValidationError: Non-positive amount or expiry
        """
        expected_amount = to_amount(amount)

        conversation = self.conversation_repository.get_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        business = conversation.business

        if expiry_hours is None:
            expiry_hours = business.rule('payment_expiry_hours') or self.default_expiry_hours
        try:
            expiry_hours = float(expiry_hours)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid expiry: {expiry_hours!r}")
        if expiry_hours <= 0:
            raise ValidationError("Expiry must be positive")

        repo = self.payment_intent_repository
        try:
            intent = repo.create(
                conversation_id=conversation.id,
                business_id=conversation.business_id,
                expected_amount=expected_amount,
                currency=business.currency or 'KES',
                description=description,
                status=PaymentIntentStatus.INITIATED.value,
                expires_at=utc_now() + timedelta(hours=expiry_hours),
            )
            event = self.event_bus.record(
                EventType.PAYMENT_INITIATED,
                business_id=intent.business_id,
                conversation_id=intent.conversation_id,
                payment_intent_id=intent.id,
                payload={
                    'amount': str(expected_amount),
                    'currency': intent.currency,
                    'expires_at': format_utc_iso(intent.expires_at),
                    'description': description,
                },
            )
            repo.commit()
        except Exception:
            repo.rollback()
            raise

        logger.info(
            "Payment intent created",
            payment_intent_id=intent.id,
            conversation_id=conversation_id,
            amount=str(expected_amount),
            expiry_hours=expiry_hours
        )
        self.event_bus.publish(event)
        return intent

    def update_status(self, intent_id: int, new_status: Union[PaymentIntentStatus, str],
                      details: StatusDetails = None) -> PaymentIntent:
        """
        Move an intent to a new status.

        Args:
            intent_id: Intent to update
            new_status: pending, paid, failed or expired
            details: PendingDetails, PaidDetails or FailedDetails matching
                the status; expired takes none

        Raises:
            NotFoundError: Intent does not exist
            ValidationError: Unknown status or mismatched details
            InvalidTransitionError: Intent is already paid, failed or expired
        """
        status = self._coerce_status(new_status)
        self._check_details(status, details)

        intent = self.payment_intent_repository.get_by_id(intent_id)
        if intent is None:
            raise NotFoundError(f"Payment intent {intent_id} not found")
        if intent.is_terminal:
            raise InvalidTransitionError(
                f"Payment intent {intent_id} is already {intent.status}",
                {'status': intent.status, 'requested': status.value}
            )

        applied = self._apply(intent, status, details)
        if not applied:
            raise InvalidTransitionError(
                f"Payment intent {intent_id} reached a terminal status concurrently",
                {'requested': status.value}
            )
        return intent

    def check_expired_intents(self, limit: Optional[int] = None) -> int:
        """
        Expire every initiated/pending intent whose expires_at has passed.

        Safe to run concurrently with itself and with provider callbacks:
        an intent another writer finalized first is skipped silently.

        Returns:
            Number of intents this run actually expired
        """
        now = utc_now()
        overdue = self.payment_intent_repository.find_overdue(now, limit)
        expired = 0
        for intent in overdue:
            try:
                if self._apply(intent, PaymentIntentStatus.EXPIRED, None):
                    expired += 1
            except TransientIOError as e:
                logger.error("Failed to expire payment intent", payment_intent_id=intent.id, error=str(e))

        if overdue:
            logger.info("Payment expiry sweep finished", candidates=len(overdue), expired=expired)
        return expired

    def get_intent(self, intent_id: int) -> PaymentIntent:
        intent = self.payment_intent_repository.get_by_id(intent_id)
        if intent is None:
            raise NotFoundError(f"Payment intent {intent_id} not found")
        return intent

    def get_active_intent(self, conversation_id: int) -> Optional[PaymentIntent]:
        """Most recent non-terminal intent of a conversation, if any"""
        return self.payment_intent_repository.find_active_for_conversation(conversation_id)

    def find_by_provider_reference(self, provider_reference: str) -> Optional[PaymentIntent]:
        return self.payment_intent_repository.find_by_provider_reference(provider_reference)

    # Internals

    @staticmethod
    def _coerce_status(new_status) -> PaymentIntentStatus:
        try:
            status = PaymentIntentStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown payment status: {new_status}")
        if status == PaymentIntentStatus.INITIATED:
            raise ValidationError("A payment intent cannot move back to initiated")
        return status

    @staticmethod
    def _check_details(status: PaymentIntentStatus, details: StatusDetails) -> None:
        expected = DETAILS_BY_STATUS[status]
        if details is None:
            if status == PaymentIntentStatus.PENDING:
                raise ValidationError("Pending status needs PendingDetails with a provider reference")
            return
        if expected is None or not isinstance(details, expected):
            raise ValidationError(
                f"{type(details).__name__} is not valid for status {status.value}"
            )

    def _apply(self, intent: PaymentIntent, status: PaymentIntentStatus, details: StatusDetails) -> bool:
        """
        Conditionally write the status, stage its event and commit.

        Returns:
            False when the intent was already terminal at write time
        """
        now = utc_now()
        updates: Dict[str, Any] = {'status': status.value, 'updated_at': now}
        metadata = dict(intent.provider_metadata or {})

        if isinstance(details, PendingDetails):
            updates['provider_reference'] = details.provider_reference
        elif isinstance(details, PaidDetails):
            metadata.update(details.provider_metadata or {})
            updates['provider_transaction_id'] = details.provider_transaction_id
            updates['provider_metadata'] = metadata
        elif isinstance(details, FailedDetails):
            metadata.update(details.provider_metadata or {})
            updates['failure_reason'] = details.reason
            updates['provider_metadata'] = metadata

        if status == PaymentIntentStatus.PAID:
            updates['paid_at'] = now
        elif status == PaymentIntentStatus.FAILED:
            updates['failed_at'] = now
            updates.setdefault('failure_reason', None)

        intent_id = intent.id
        business_id = intent.business_id
        conversation_id = intent.conversation_id
        payload = {
            'amount': str(intent.expected_amount),
            'currency': intent.currency,
            'previous_status': intent.status,
        }

        repo = self.payment_intent_repository
        event = None
        try:
            if repo.transition_if_active(intent_id, updates) == 0:
                repo.rollback()
                logger.info(
                    "Payment status write lost to a concurrent update",
                    payment_intent_id=intent_id,
                    requested=status.value
                )
                return False

            event_type = STATUS_EVENTS.get(status)
            if event_type is not None:
                if status == PaymentIntentStatus.PAID:
                    payload['provider_transaction_id'] = updates.get('provider_transaction_id')
                elif status == PaymentIntentStatus.FAILED:
                    payload['reason'] = updates.get('failure_reason')
                event = self.event_bus.record(
                    event_type,
                    business_id=business_id,
                    conversation_id=conversation_id,
                    payment_intent_id=intent_id,
                    payload=payload,
                )
            repo.commit()
        except Exception:
            repo.rollback()
            raise

        logger.info(
            "Payment intent status updated",
            payment_intent_id=intent_id,
            from_status=payload['previous_status'],
            to_status=status.value
        )
        if event is not None:
            self.event_bus.publish(event)
        return True
