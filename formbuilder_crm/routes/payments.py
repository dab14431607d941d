from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

from ..services.payment_service import PaymentService
from ..utils import get_json_body, get_pagination, pagination_meta

payments_bp = Blueprint('payments', __name__)


@payments_bp.route('/payments/orders', methods=['POST'])
def create_order():
    """
    Body: { formId, submissionId, amount (major units), currency?, customerDetails? }
    """
    data = get_json_body()
    order = PaymentService.create_order(
        data.get('formId'),
        data.get('submissionId'),
        data.get('amount'),
        currency=data.get('currency') or 'INR',
        customer_details=data.get('customerDetails'),
    )
    return jsonify({'success': True, **order})


@payments_bp.route('/payments/verify', methods=['POST'])
def verify_payment():
    """
    Gateway callback relayed by the client.
    Body: { orderId, paymentId, signature, submissionId } (razorpay_* names also accepted)
    """
    data = get_json_body()
    order_id = data.get('orderId') or data.get('razorpay_order_id')
    payment_id = data.get('paymentId') or data.get('razorpay_payment_id')
    signature = data.get('signature') or data.get('razorpay_signature')
    submission_id = data.get('submissionId')

    if PaymentService.verify_callback(order_id, payment_id, signature, submission_id):
        return jsonify({
            'success': True,
            'message': 'Payment verified successfully',
            'paymentId': payment_id,
            'orderId': order_id,
        })

    current_app.logger.warning(f"Payment verification failed for submission {submission_id}")
    return jsonify({
        'success': False,
        'error': 'Payment verification failed - invalid signature',
    }), 400


@payments_bp.route('/payments/status', methods=['POST'])
def update_payment_status():
    """
    Body: { submissionId, status, paymentId?, orderId?, error?, paymentMethod?, customerDetails? }
    """
    data = get_json_body()
    submission = PaymentService.update_status(
        data.get('submissionId'),
        data.get('status'),
        payment_id=data.get('paymentId'),
        order_id=data.get('orderId'),
        error=data.get('error'),
        payment_method=data.get('paymentMethod') or 'upi',
        customer_details=data.get('customerDetails'),
    )
    return jsonify({
        'success': True,
        'message': f"Payment status updated to {submission['paymentStatus']}",
        'submission': submission,
    })


@payments_bp.route('/payments/<identifier>', methods=['GET'])
def get_payment(identifier):
    return jsonify({'success': True, 'payment': PaymentService.get_payment_details(identifier)})


@payments_bp.route('/admin/payments', methods=['GET'])
@login_required
def list_payments():
    page, limit = get_pagination()
    payments, total, summary = PaymentService.list_payments(
        page=page,
        limit=limit,
        search=request.args.get('search'),
        status=request.args.get('status'),
        date_from=request.args.get('dateFrom'),
        date_to=request.args.get('dateTo'),
    )
    return jsonify({
        'success': True,
        'payments': payments,
        'pagination': pagination_meta(page, limit, total),
        'summary': summary,
    })
