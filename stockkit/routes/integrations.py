from datetime import datetime
from flask import Blueprint, request, jsonify, current_app
from flask_babel import gettext as _
from sqlalchemy.exc import SQLAlchemyError
from ..models import db, ExternalProduct, SyncLog, StockKitError, ValidationError
from .utils import log_audit, get_current_user_id, get_product, record_sale

integrations_blueprint = Blueprint('integrations', __name__)

SUPPORTED_PLATFORMS = ['shopify', 'etsy']


def _check_platform(platform):
    if platform not in SUPPORTED_PLATFORMS:
        raise ValidationError(_('Unsupported platform: %(platform)s', platform=platform))


def map_external_product(user_id, platform, external_product_id, local_product_id):
    """Create or update the link between a channel listing and a local product. Does not commit."""
    _check_platform(platform)
    external_product_id = str(external_product_id or '').strip()
    if not external_product_id:
        raise ValidationError(_('external_product_id is required'))
    if local_product_id is not None:
        local_product_id = get_product(user_id, local_product_id).id

    mapping = ExternalProduct.query.filter_by(
        user_id=user_id, platform=platform, external_product_id=external_product_id
    ).first()
    if not mapping:
        mapping = ExternalProduct(user_id=user_id, platform=platform, external_product_id=external_product_id)
        db.session.add(mapping)
    mapping.local_product_id = local_product_id
    mapping.last_synced_at = datetime.utcnow()
    return mapping


def import_external_orders(user_id, platform, orders):
    """
    Record the mapped line items of channel orders as sales.
    Each line item is its own sale: one failing item (e.g. short on stock)
    does not stop the others. Returns the stored SyncLog.
    """
    _check_platform(platform)
    if not isinstance(orders, list):
        raise ValidationError(_('orders must be a list'))

    mappings = {
        m.external_product_id: m.local_product_id
        for m in ExternalProduct.query.filter_by(user_id=user_id, platform=platform).all()
    }

    recorded, skipped, errors = [], 0, []
    for order in orders:
        if not isinstance(order, dict):
            errors.append(_('Malformed order entry'))
            continue
        order_date = str(order.get('created_at') or '')[:10] or None
        line_items = order.get('line_items') or []
        if not isinstance(line_items, list):
            errors.append(_('Order %(id)s: line_items must be a list', id=order.get('id')))
            continue
        for line_item in line_items:
            if not isinstance(line_item, dict):
                errors.append(_('Order %(id)s: malformed line item', id=order.get('id')))
                continue
            local_product_id = mappings.get(str(line_item.get('product_id')))
            if local_product_id is None:
                skipped += 1
                continue
            try:
                sale = record_sale(
                    user_id,
                    local_product_id,
                    line_item.get('quantity'),
                    order_date=order_date,
                    channel=platform,
                    sale_price=line_item.get('price')
                )
                recorded.append(sale.id)
            except StockKitError as e:
                current_app.logger.warning(
                    f"{platform} order {order.get('id')} item {line_item.get('product_id')} not imported for {user_id}: {e}")
                errors.append(f"{order.get('id')}/{line_item.get('product_id')}: {e}")
            except SQLAlchemyError as e:
                # record_sale has already rolled this item back
                current_app.logger.error(
                    f"{platform} order {order.get('id')} item {line_item.get('product_id')} failed for {user_id}: {e}")
                errors.append(f"{order.get('id')}/{line_item.get('product_id')}: {_('database error')}")

    if errors and recorded:
        status = 'partial'
    elif errors:
        status = 'error'
    else:
        status = 'success'

    sync_log = SyncLog(
        user_id=user_id,
        platform=platform,
        sync_type='orders',
        status=status,
        items_processed=len(recorded),
        error_message='\n'.join(errors) if errors else None
    )
    db.session.add(sync_log)
    log_audit(user_id, "SYNC", "Orders", None,
              f"{platform}: {len(recorded)} recorded, {skipped} unmapped, {len(errors)} failed")
    db.session.commit()

    current_app.logger.info(
        f"Imported {len(recorded)} {platform} sales for {user_id} ({skipped} unmapped, {len(errors)} failed)")
    return sync_log, recorded, skipped


# ----------------------------
# Sales channel sync
# ----------------------------
@integrations_blueprint.route('/api/integrations/<string:platform>/products', methods=['POST'])
def map_products(platform):
    user_id = get_current_user_id()
    data = request.get_json(silent=True) or {}
    entries = data.get('mappings')
    if not isinstance(entries, list) or not entries:
        raise ValidationError(_('mappings must be a non-empty list'))

    mappings = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValidationError(_('Each mapping needs an external_product_id'))
        mappings.append(map_external_product(
            user_id, platform, entry.get('external_product_id'), entry.get('product_id')))
    db.session.add(SyncLog(user_id=user_id, platform=platform, sync_type='products',
                           status='success', items_processed=len(mappings)))
    db.session.commit()
    return jsonify({'success': True, 'mappings': [m.to_dict() for m in mappings]})


@integrations_blueprint.route('/api/integrations/<string:platform>/orders', methods=['POST'])
def import_orders(platform):
    user_id = get_current_user_id()
    data = request.get_json(silent=True) or {}
    sync_log, recorded, skipped = import_external_orders(user_id, platform, data.get('orders'))
    return jsonify({
        'success': sync_log.status != 'error',
        'sync_log': sync_log.to_dict(),
        'order_ids': recorded,
        'skipped': skipped
    })


@integrations_blueprint.route('/api/integrations/sync_logs', methods=['GET'])
def sync_logs():
    user_id = get_current_user_id()
    logs = SyncLog.query.filter_by(user_id=user_id).order_by(SyncLog.created_at.desc(), SyncLog.id.desc()).all()
    return jsonify({'sync_logs': [log.to_dict() for log in logs]})
