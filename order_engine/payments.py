"""Payment initialization and reconciliation.

Two producers report on the same payment: the processor's signed webhook and
the client's verify poll. Both feed ``OrderRepository.reconcile_payment_if_pending``,
which applies the completion at most once per reference.
"""
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from order_engine.audit import AuditSink
from order_engine.effects import best_effort
from order_engine.enums import AuditAction, PaymentStatus
from order_engine.errors import (
    AlreadyProcessed,
    Forbidden,
    InvalidSignature,
    InvalidState,
    MerchantPaymentNotConfigured,
    NotFound,
)
from order_engine.models import Payment
from order_engine.notifications import NotificationDispatcher, PaymentConfirmed
from order_engine.order_numbers import generate_payment_reference
from order_engine.processor import PaystackClient
from order_engine.repository import POLL, WEBHOOK, OrderRepository, ReconcileOutcome

logger = logging.getLogger(__name__)

# Final failures only; any other non-success status stays PENDING.
FAILED_PROCESSOR_STATUSES = {"failed"}


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentService:

    def __init__(self, repository: OrderRepository, processor: PaystackClient,
                 notifier: NotificationDispatcher, audit: AuditSink,
                 currency: str = "GHS", max_reference_attempts: int = 10):
        self.repository = repository
        self.processor = processor
        self.notifier = notifier
        self.audit = audit
        self.currency = currency
        self.max_reference_attempts = max_reference_attempts

    def initialize_payment(self, order_id: str, email: str, phone: str,
                           callback_url: Optional[str] = None, actor_id: Optional[str] = None) -> dict:
        order = self.repository.get_order(order_id)

        if order.customer_email != email and order.customer_phone != phone:
            raise Forbidden("Order does not match provided contact information")
        if order.payment_status == PaymentStatus.COMPLETED.value:
            raise AlreadyProcessed("Order already paid")

        account = self.repository.settlement_account_for_store(order.store_id)
        if account is None or not account.is_active or not account.subaccount_code:
            raise MerchantPaymentNotConfigured(
                "Merchant has not linked a payment account. Please contact support."
            )

        reference = generate_payment_reference(
            order.order_number, self.repository.payment_reference_exists, self.max_reference_attempts
        )

        transaction = self.processor.initialize_transaction(
            email=email,
            amount=to_minor_units(order.total),
            currency=self.currency,
            reference=reference,
            callback_url=callback_url,
            metadata={
                "orderId": order.id,
                "orderNumber": order.order_number,
                "merchantId": account.merchant_id,
                "storeId": order.store_id,
                "customerPhone": phone,
            },
            subaccount=account.subaccount_code,
            transaction_charge=0,
            bearer="account",
        )

        payment = self.repository.add_payment(Payment(
            order_id=order.id,
            amount=order.total,
            currency=self.currency,
            method=order.payment_method,
            status=PaymentStatus.PENDING.value,
            reference=reference,
            access_code=transaction.get("access_code"),
            authorization_url=transaction.get("authorization_url"),
            details={
                "access_code": transaction.get("access_code"),
                "authorization_url": transaction.get("authorization_url"),
            },
        ))

        logger.info("Payment initialized: %s for order %s", reference, order.order_number)
        best_effort(
            "Audit of payment initialization",
            self.audit.record,
            AuditAction.PAYMENT, "Payment", payment.id,
            actor_id=actor_id,
            new_value={"status": payment.status},
            metadata={"orderId": order.id, "amount": str(order.total), "reference": reference},
        )
        return {
            "authorization_url": payment.authorization_url,
            "access_code": payment.access_code,
            "reference": reference,
            "payment": payment,
        }

    def verify_payment(self, reference: str) -> dict:
        payment = self.repository.get_payment(reference)
        if payment is None:
            raise NotFound("Payment not found")

        data = self.processor.verify_transaction(reference)
        status = (data.get("status") or "").lower()

        if status == "success":
            self._check_amount(payment, data)
            try:
                outcome = self.repository.reconcile_payment_if_pending(reference, data, POLL)
            except AlreadyProcessed:
                current = self.repository.get_payment(reference)
                verified = current.status == PaymentStatus.COMPLETED.value
                return {
                    "verified": verified,
                    "payment": current,
                    "message": "Payment successful" if verified else "Payment failed",
                }
            self._after_completion(outcome, POLL)
            return {"verified": True, "payment": outcome.payment, "message": "Payment successful"}

        if status in FAILED_PROCESSOR_STATUSES:
            reason = data.get("gateway_response") or status
            try:
                payment = self.repository.mark_payment_failed_if_pending(reference, data, reason)
                logger.info("Payment %s marked failed: %s", reference, reason)
            except AlreadyProcessed:
                payment = self.repository.get_payment(reference)
            verified = payment.status == PaymentStatus.COMPLETED.value
            return {
                "verified": verified,
                "payment": payment,
                "message": "Payment successful" if verified else "Payment failed",
            }

        return {"verified": False, "payment": payment, "message": "Payment not completed yet"}

    def handle_webhook(self, signature: Optional[str], raw_body: bytes) -> dict:
        if not self.processor.verify_webhook_signature(signature, raw_body):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidSignature("Invalid webhook signature")

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise InvalidState("Malformed webhook payload")
        if not isinstance(event, dict):
            raise InvalidState("Malformed webhook payload")

        event_type = event.get("event")
        data = event.get("data") or {}
        logger.info("Webhook received: %s", event_type)

        if event_type == "charge.success":
            self._handle_charge_success(data)
        elif event_type == "transfer.success":
            logger.info("Transfer successful: %s", data.get("reference"))
        elif event_type == "transfer.failed":
            logger.error("Transfer failed: %s (%s)", data.get("reference"), data.get("reason"))
        else:
            logger.info("Unhandled webhook event: %s", event_type)

        return {"status": "success"}

    def _handle_charge_success(self, data: dict) -> None:
        reference = data.get("reference")
        if not reference:
            raise InvalidState("Webhook charge has no reference")

        payment = self.repository.get_payment(reference)
        if payment is None:
            raise NotFound(f"Payment {reference} not found")
        self._check_amount(payment, data)

        try:
            outcome = self.repository.reconcile_payment_if_pending(reference, data, WEBHOOK)
        except AlreadyProcessed:
            logger.info("Duplicate charge.success for %s ignored", reference)
            return
        self._after_completion(outcome, WEBHOOK)

    def _check_amount(self, payment: Payment, data: dict) -> None:
        reported = data.get("amount")
        if reported is None:
            return
        expected = to_minor_units(payment.amount)
        if int(reported) != expected:
            logger.error(
                "Amount mismatch for %s: processor reported %s, expected %s",
                payment.reference, reported, expected,
            )
            raise InvalidState(f"Amount mismatch for payment {payment.reference}")

    def _after_completion(self, outcome: ReconcileOutcome, source: str) -> None:
        payment, order = outcome.payment, outcome.order
        logger.info("Payment %s completed via %s for order %s", payment.reference, source, order.order_number)
        best_effort(
            "Audit of payment completion",
            self.audit.record,
            AuditAction.PAYMENT, "Payment", payment.id,
            old_value={"status": PaymentStatus.PENDING.value, "orderStatus": outcome.previous_status.value},
            new_value={"status": payment.status, "orderStatus": order.status},
            metadata={"reference": payment.reference, "source": source, "orderId": order.id},
        )
        best_effort(
            "Payment confirmation notification",
            self.notifier.dispatch,
            PaymentConfirmed(
                order_id=order.id,
                order_number=order.order_number,
                payment_ref=payment.reference,
                amount=payment.amount,
                customer_phone=order.customer_phone,
            ),
        )
