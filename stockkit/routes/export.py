import io
from datetime import date
import pandas as pd
from flask import Blueprint, request, jsonify, send_file
from flask_babel import gettext as _
from ..models import Material, Product, Order, ValidationError
from .utils import get_current_user_id

export_blueprint = Blueprint('export', __name__)


def _order_rows(user_id):
    orders = Order.query.filter_by(user_id=user_id).order_by(Order.order_date.desc(), Order.id.desc()).all()
    rows = []
    for order in orders:
        product = order.product
        cogs = product.cogs if product else 0
        rows.append({
            'id': order.id,
            'product_name': product.name if product else None,
            'quantity_sold': order.quantity_sold,
            'selling_price': float(order.sale_price),
            'cogs': float(cogs),
            'revenue': float(order.revenue),
            'profit': float((order.sale_price - cogs) * order.quantity_sold),
            'order_date': order.order_date.isoformat(),
            'status': order.status,
            'channel': order.channel,
            'created_at': order.created_at.isoformat()
        })
    return rows


def _product_rows(user_id):
    products = Product.query.filter_by(user_id=user_id).order_by(Product.name).all()
    return [p.to_dict(include_recipe=False) for p in products]


def _material_rows(user_id):
    materials = Material.query.filter_by(user_id=user_id).order_by(Material.name).all()
    return [m.to_dict() for m in materials]


EXPORTERS = {
    'orders': _order_rows,
    'products': _product_rows,
    'materials': _material_rows,
}


@export_blueprint.route('/api/export/<string:dataset>')
def export_dataset(dataset):
    user_id = get_current_user_id()
    if dataset not in EXPORTERS:
        raise ValidationError(_('Unknown export: %(dataset)s', dataset=dataset))
    export_format = request.args.get('format', 'csv')
    if export_format not in ('csv', 'json'):
        raise ValidationError(_('Export format must be csv or json'))

    rows = EXPORTERS[dataset](user_id)
    filename = f"{dataset}_{date.today().isoformat()}"

    if export_format == 'json':
        return jsonify({dataset: rows, 'filename': f"{filename}.json"})

    if not rows:
        raise ValidationError(_('No data to export'))

    buffer = io.BytesIO()
    pd.DataFrame(rows).to_csv(buffer, index=False, encoding='utf-8')
    buffer.seek(0)
    return send_file(buffer, mimetype='text/csv', as_attachment=True, download_name=f"{filename}.csv")
