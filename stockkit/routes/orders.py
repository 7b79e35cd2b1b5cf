from flask import Blueprint, request, jsonify
from flask_babel import gettext as _
from ..models import Order, ORDER_STATUSES, ValidationError
from .utils import get_current_user_id, get_order, record_sale, cancel_sale, parse_date

orders_blueprint = Blueprint('orders', __name__)


# ----------------------------
# Orders / Sales
# ----------------------------
@orders_blueprint.route('/api/orders', methods=['GET'])
def list_orders():
    user_id = get_current_user_id()
    query = Order.query.filter_by(user_id=user_id)

    status = request.args.get('status')
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(_('Invalid order status: %(status)s', status=status))
        query = query.filter(Order.status == status)
    product_id = request.args.get('product_id', type=int)
    if product_id:
        query = query.filter(Order.product_id == product_id)
    start_date = parse_date(request.args.get('start_date'))
    if start_date:
        query = query.filter(Order.order_date >= start_date)
    end_date = parse_date(request.args.get('end_date'))
    if end_date:
        query = query.filter(Order.order_date <= end_date)

    orders = query.order_by(Order.order_date.desc(), Order.id.desc()).all()
    return jsonify({'orders': [o.to_dict() for o in orders]})


@orders_blueprint.route('/api/orders', methods=['POST'])
def add_order():
    user_id = get_current_user_id()
    data = request.get_json(silent=True) or {}
    if data.get('product_id') is None:
        raise ValidationError(_('product_id is required'))

    order = record_sale(
        user_id,
        data.get('product_id'),
        data.get('quantity_sold'),
        order_date=data.get('order_date'),
        status=data.get('status', 'Completed'),
        channel=data.get('channel', 'manual'),
        sale_price=data.get('sale_price')
    )
    return jsonify({'success': True, 'order': order.to_dict()}), 201


@orders_blueprint.route('/api/orders/<int:order_id>', methods=['GET'])
def get_order_detail(order_id):
    user_id = get_current_user_id()
    return jsonify({'order': get_order(user_id, order_id).to_dict()})


@orders_blueprint.route('/api/orders/<int:order_id>/cancel', methods=['POST'])
def cancel_order(order_id):
    user_id = get_current_user_id()
    order = cancel_sale(user_id, order_id)
    return jsonify({'success': True, 'order': order.to_dict()})
