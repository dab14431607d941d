import hashlib
import hmac
import logging
from datetime import timedelta

import requests
from flask import current_app
from sqlalchemy import func, or_

from ..errors import AppError, Conflict, GatewayError, NotFound, ValidationFailed
from ..models import (
    db, Form, Payment, get_now,
    COLLECTION_FORM_RESPONSE, PAYMENT_CREATED, PAYMENT_FAILED, PAYMENT_PENDING,
    PAYMENT_SUCCESS, SUBMISSION_PAYMENT_STATUSES, isoformat,
)
from ..utils import parse_datetime
from .submission_service import PAYMENT_COLLECTIONS, SubmissionService

logger = logging.getLogger(__name__)

SIGNATURE_FAILED = 'Signature verification failed'
VERIFICATION_ERROR = 'Verification process error'

# Callback mirror also covers generic responses, after the two paid variants
VERIFY_COLLECTIONS = PAYMENT_COLLECTIONS + (COLLECTION_FORM_RESPONSE,)


class RazorpayClient:
    """Minimal Orders API client. One attempt per call, no retries."""
    TIMEOUT = 15

    @staticmethod
    def get_credentials():
        key_id = current_app.config.get('RAZORPAY_KEY_ID')
        key_secret = current_app.config.get('RAZORPAY_KEY_SECRET')
        if not key_id or not key_secret:
            raise GatewayError('Payment gateway is not configured')
        return key_id, key_secret

    @staticmethod
    def create_order(amount, currency, receipt, notes=None):
        key_id, key_secret = RazorpayClient.get_credentials()
        url = f"{current_app.config['RAZORPAY_API_URL']}/orders"
        payload = {
            'amount': amount,
            'currency': currency,
            'receipt': receipt,
            'notes': notes or {},
        }
        try:
            response = requests.post(url, json=payload, auth=(key_id, key_secret), timeout=RazorpayClient.TIMEOUT)
        except requests.RequestException as e:
            logger.error("Razorpay order request failed: %s", e)
            raise GatewayError('Failed to create payment order') from e

        if response.status_code >= 400:
            logger.error("Razorpay order rejected (%s): %s", response.status_code, response.text)
            raise GatewayError('Failed to create payment order')
        return response.json()


class PaymentService:

    @staticmethod
    def compute_signature(order_id, payment_id, secret=None):
        secret = secret or current_app.config.get('RAZORPAY_KEY_SECRET') or ''
        body = f"{order_id}|{payment_id}"
        return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def is_authentic(order_id, payment_id, signature):
        expected = PaymentService.compute_signature(order_id, payment_id)
        return hmac.compare_digest(expected.encode(), str(signature or '').encode('utf-8'))

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @staticmethod
    def create_order(form_id, submission_id, amount, currency='INR', customer_details=None):
        if not form_id or not submission_id or amount is None:
            raise ValidationFailed('Missing required fields: formId, submissionId, amount')
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise ValidationFailed('Amount must be a number')
        if amount <= 0:
            raise ValidationFailed('Amount must be greater than 0')

        lookup = SubmissionService.find_submission(submission_id, PAYMENT_COLLECTIONS)
        if not lookup:
            raise NotFound('Form submission not found')
        submission = lookup.submission
        if submission.form_id != form_id:
            raise ValidationFailed('Submission does not belong to this form')

        # 1. Gateway order (minor units)
        amount_minor = int(round(amount * 100))
        order = RazorpayClient.create_order(
            amount=amount_minor,
            currency=currency,
            receipt=f"receipt_{submission_id}",
            notes={'formId': form_id, 'submissionId': submission_id},
        )
        order_id = order.get('id')
        if not order_id:
            raise GatewayError('Payment gateway returned no order id')
        if Payment.query.filter_by(order_id=order_id).first():
            raise Conflict('Duplicate order id')

        # 2. Local payment record
        customer = customer_details or submission.customer_details or {}
        payment = Payment(
            order_id=order_id,
            form_id=form_id,
            submission_id=submission_id,
            amount=amount_minor,
            currency=currency,
            status=PAYMENT_CREATED,
            customer_details={
                'name': customer.get('name', ''),
                'email': customer.get('email', ''),
                'contact': customer.get('contact', ''),
            },
        )
        db.session.add(payment)
        db.session.commit()

        # 3. Mirror on the submission
        submission.payment_order_id = order_id
        submission.payment_status = PAYMENT_PENDING
        submission.payment_amount = amount
        db.session.commit()

        logger.info("Payment order %s created for submission %s", order_id, submission_id)
        return {
            'orderId': order_id,
            'amount': amount_minor,
            'currency': currency,
            'keyId': current_app.config.get('RAZORPAY_KEY_ID'),
            'paymentRecordId': payment.id,
        }

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    @staticmethod
    def _record_on_payment(order_id, status, payment_id=None, signature=None, error=None):
        payment = Payment.query.filter_by(order_id=order_id).first()
        if not payment:
            logger.warning("No payment record for order %s", order_id)
            return None
        if payment.is_terminal:
            # Terminal states are never reversed
            logger.warning("Payment %s already %s; ignoring %s", order_id, payment.status, status)
            return payment

        now = get_now()
        payment.status = status
        if status == PAYMENT_SUCCESS:
            payment.payment_id = payment_id
            payment.gateway_signature = signature
            payment.paid_at = now
        else:
            payment.error = error
            payment.failed_at = now
        db.session.commit()
        return payment

    @staticmethod
    def _record_on_submission(submission_id, status, payment_id=None, order_id=None, error=None):
        lookup = SubmissionService.find_submission(submission_id, VERIFY_COLLECTIONS)
        if not lookup:
            logger.warning("No submission %s to mirror payment status on", submission_id)
            return None
        submission = lookup.submission
        if submission.payment_status == PAYMENT_SUCCESS:
            if status != PAYMENT_SUCCESS:
                logger.warning("Submission %s already paid; ignoring %s", submission_id, status)
            return submission

        submission.payment_status = status
        if status == PAYMENT_SUCCESS:
            submission.payment_id = payment_id
            submission.payment_order_id = order_id
            submission.payment_completed_at = get_now()
            submission.payment_error = None
        else:
            submission.payment_error = error
        db.session.commit()
        return submission

    @staticmethod
    def mark_submission_failed_quietly(submission_id, reason=VERIFICATION_ERROR):
        """Best-effort; never raises."""
        if not submission_id:
            return
        try:
            db.session.rollback()
            PaymentService._record_on_submission(submission_id, PAYMENT_FAILED, error=reason)
        except Exception as e:
            logger.error("Could not mark submission %s failed after verification error: %s", submission_id, e)
            try:
                db.session.rollback()
            except Exception:
                logger.exception("Rollback failed")

    @staticmethod
    def verify_callback(order_id, payment_id, signature, submission_id):
        """
        Returns True when the signature is authentic and the payment ends
        up paid, False otherwise.
        The payment record and the submission are written separately; the
        payment record is authoritative, so a record already settled the
        other way decides what the submission mirrors.
        """
        if not order_id or not payment_id or not signature or not submission_id:
            raise ValidationFailed('Missing required payment verification fields')

        try:
            authentic = PaymentService.is_authentic(order_id, payment_id, signature)
            if authentic:
                status, error = PAYMENT_SUCCESS, None
            else:
                logger.warning("Payment signature mismatch for order %s", order_id)
                status, error = PAYMENT_FAILED, SIGNATURE_FAILED

            payment = PaymentService._record_on_payment(
                order_id, status, payment_id=payment_id, signature=signature, error=error,
            )
            if payment is not None and payment.status != status:
                logger.warning("Order %s already settled as %s; mirroring that instead of %s",
                               order_id, payment.status, status)
                status, error = payment.status, payment.error
                payment_id = payment.payment_id or payment_id

            PaymentService._record_on_submission(
                submission_id, status, payment_id=payment_id, order_id=order_id, error=error,
            )
            if authentic and status == PAYMENT_SUCCESS:
                logger.info("Payment verified for submission %s (order %s)", submission_id, order_id)
                return True
            return False
        except Exception as e:
            logger.exception("Error verifying payment for order %s", order_id)
            PaymentService.mark_submission_failed_quietly(submission_id)
            raise AppError('Failed to verify payment') from e

    # ------------------------------------------------------------------
    # External status push
    # ------------------------------------------------------------------

    @staticmethod
    def update_status(submission_id, status, payment_id=None, order_id=None, error=None,
                      payment_method='upi', customer_details=None):
        if not submission_id:
            raise ValidationFailed('Submission ID is required')
        if status not in SUBMISSION_PAYMENT_STATUSES:
            raise ValidationFailed(f'Invalid payment status: {status}')

        # Lead first, then swayamsevak
        lookup = SubmissionService.find_submission(submission_id, PAYMENT_COLLECTIONS)
        if not lookup:
            raise NotFound('Form submission not found')
        submission = lookup.submission

        submission.payment_status = status
        submission.payment_method = payment_method or 'upi'
        if customer_details:
            submission.customer_details = customer_details
        if status == PAYMENT_SUCCESS:
            submission.payment_id = payment_id
            submission.payment_order_id = order_id
            submission.payment_completed_at = get_now()
        elif status == PAYMENT_FAILED:
            submission.payment_error = error
        db.session.commit()

        logger.info("Submission %s (%s) payment status -> %s", submission.id, lookup.collection, status)
        return {
            'id': submission.id,
            'paymentStatus': submission.payment_status,
            'paymentId': submission.payment_id,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def get_payment_details(identifier):
        payment = (Payment.query
                   .filter(or_(Payment.order_id == identifier, Payment.payment_id == identifier, Payment.id == identifier))
                   .first())
        if not payment:
            raise NotFound('Payment not found')

        data = payment.to_dict()
        form = db.session.get(Form, payment.form_id)
        data['formTitle'] = form.title if form else None
        lookup = SubmissionService.find_submission(payment.submission_id)
        if lookup:
            data['submission'] = {
                'id': lookup.submission.id,
                'collection': lookup.collection,
                'paymentStatus': lookup.submission.payment_status,
                'submittedAt': isoformat(lookup.submission.submitted_at),
            }
        return data

    @staticmethod
    def list_payments(page=1, limit=20, search=None, status=None, date_from=None, date_to=None):
        query = Payment.query
        if status:
            query = query.filter(Payment.status == status)
        if search:
            like = f"%{search}%"
            query = query.filter(or_(
                Payment.order_id.ilike(like),
                Payment.payment_id.ilike(like),
                Payment.customer_details['name'].as_string().ilike(like),
                Payment.customer_details['email'].as_string().ilike(like),
            ))
        start = parse_datetime(date_from)
        if start:
            query = query.filter(Payment.created_at >= start)
        end = parse_datetime(date_to)
        if end:
            # Inclusive of the whole end day when only a date is given
            if end.hour == 0 and end.minute == 0 and end.second == 0:
                end = end + timedelta(days=1)
            query = query.filter(Payment.created_at < end)

        total = query.count()
        payments = (query.order_by(Payment.created_at.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                    .all())

        form_titles = dict(
            db.session.query(Form.id, Form.title)
            .filter(Form.id.in_({p.form_id for p in payments}))
            .all()
        ) if payments else {}

        rows = []
        for payment in payments:
            row = payment.to_dict()
            row['formTitle'] = form_titles.get(payment.form_id)
            rows.append(row)

        summary_rows = (query.with_entities(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
                        .group_by(Payment.status)
                        .all())
        by_status = {s: {'count': c, 'amount': a / 100.0} for s, c, a in summary_rows}
        summary = {
            'totalAmount': sum(v['amount'] for v in by_status.values()),
            'successfulAmount': by_status.get(PAYMENT_SUCCESS, {}).get('amount', 0),
            'totalPayments': total,
            'statusCounts': {s: v['count'] for s, v in by_status.items()},
        }
        return rows, total, summary
