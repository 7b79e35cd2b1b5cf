import os
from decimal import Decimal
from flask import Blueprint, jsonify, current_app, send_from_directory, abort, request
from ..models import Material, Product, Order, AuditLog
from .utils import get_current_user_id, low_stock_materials

main_blueprint = Blueprint('main', __name__)


@main_blueprint.route('/health')
def health():
    return jsonify({'status': 'ok'})


@main_blueprint.route('/images/<path:filename>')
def serve_image(filename):
    """Serve product photos from the upload folder."""
    # Only allow specific image extensions
    allowed_extensions = {'.jpg', '.jpeg', '.png', '.gif', '.webp'}
    if not any(filename.lower().endswith(ext) for ext in allowed_extensions):
        abort(404)

    images_dir = current_app.config['UPLOAD_FOLDER']
    if not os.path.exists(os.path.join(images_dir, filename)):
        abort(404)

    return send_from_directory(images_dir, filename)


# Dashboard summary
@main_blueprint.route('/api/dashboard')
def dashboard():
    user_id = get_current_user_id()

    active_orders = Order.query.filter(Order.user_id == user_id, Order.status != 'Cancelled').all()
    total_revenue = sum((o.revenue for o in active_orders), Decimal('0'))
    # Profit uses each product's cached COGS, as shown on the product list
    total_profit = sum(
        ((o.sale_price - o.product.cogs) * o.quantity_sold for o in active_orders),
        Decimal('0')
    )
    units_sold = sum(o.quantity_sold for o in active_orders)

    low_stock = low_stock_materials(user_id)

    return jsonify({
        'currency_symbol': current_app.config['CURRENCY_SYMBOL'],
        'materials_count': Material.query.filter_by(user_id=user_id).count(),
        'products_count': Product.query.filter_by(user_id=user_id).count(),
        'orders_count': len(active_orders),
        'units_sold': units_sold,
        'total_revenue': float(total_revenue),
        'total_profit': float(total_profit),
        'low_stock_materials': [m.to_dict() for m in low_stock]
    })


@main_blueprint.route('/api/audit_log')
def audit_log():
    user_id = get_current_user_id()
    limit = request.args.get('limit', 100, type=int)
    logs = AuditLog.query.filter_by(user_id=user_id).order_by(
        AuditLog.timestamp.desc(), AuditLog.id.desc()
    ).limit(limit).all()
    return jsonify({'audit_logs': [log.to_dict() for log in logs]})
