from decimal import Decimal
import pandas as pd
from flask import Blueprint, request, jsonify, current_app
from flask_babel import gettext as _
from ..models import db, Material, RecipeLine, StockLog, ValidationError
from .utils import (
    log_audit, get_current_user_id, get_material, parse_decimal, adjust_stock, set_stock,
    apply_stock_count, low_stock_materials, units_list
)

materials_blueprint = Blueprint('materials', __name__)


def _material_fields(data, partial=False):
    """Validate material input. With partial=True only the given fields are returned."""
    fields = {}
    if not partial or 'name' in data:
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError(_('Material name is required'))
        fields['name'] = name
    unit = data.get('unit_of_measurement', data.get('unit'))
    if not partial or unit is not None:
        unit = (unit or '').strip()
        if not unit:
            raise ValidationError(_('Unit of measurement is required'))
        fields['unit_of_measurement'] = unit
    for field in ('cost_per_unit', 'low_stock_threshold'):
        if not partial or field in data:
            fields[field] = parse_decimal(data.get(field), field, default=Decimal('0'))
    return fields


def _check_unique_name(user_id, name, exclude_id=None):
    query = Material.query.filter_by(user_id=user_id, name=name)
    if exclude_id is not None:
        query = query.filter(Material.id != exclude_id)
    if query.first():
        raise ValidationError(_('A material named "%(name)s" already exists', name=name))


# ----------------------------
# Materials Management
# ----------------------------
@materials_blueprint.route('/api/materials', methods=['GET'])
def list_materials():
    user_id = get_current_user_id()
    query = Material.query.filter_by(user_id=user_id)
    search = request.args.get('search')
    if search:
        query = query.filter(Material.name.ilike(f"%{search}%"))
    materials = query.order_by(Material.name).all()
    return jsonify({'materials': [m.to_dict() for m in materials], 'units': units_list})


@materials_blueprint.route('/api/materials', methods=['POST'])
def add_material():
    user_id = get_current_user_id()
    data = request.get_json(silent=True) or {}
    fields = _material_fields(data)
    initial_stock = parse_decimal(data.get('current_stock'), 'current_stock', default=Decimal('0'))
    _check_unique_name(user_id, fields['name'])

    material = Material(user_id=user_id, current_stock=Decimal('0'), **fields)
    db.session.add(material)
    db.session.flush()  # Get ID for stock log
    if initial_stock > 0:
        apply_stock_count(user_id, material, initial_stock)
    log_audit(user_id, "CREATE", "Material", material.id, f"Created material {material.name}")
    db.session.commit()

    current_app.logger.info(f"Created material {material.id} ({material.name}) for {user_id}")
    return jsonify({'success': True, 'material': material.to_dict()}), 201


@materials_blueprint.route('/api/materials/<int:material_id>', methods=['GET'])
def get_material_detail(material_id):
    user_id = get_current_user_id()
    material = get_material(user_id, material_id)
    data = material.to_dict()
    data['used_in_products'] = [line.product_id for line in material.recipe_lines]
    return jsonify({'material': data})


@materials_blueprint.route('/api/materials/<int:material_id>', methods=['PUT'])
def edit_material(material_id):
    """
    Update material details. A new cost_per_unit does not touch any product's
    cached COGS; products must be re-saved to pick it up.
    """
    user_id = get_current_user_id()
    material = get_material(user_id, material_id)
    data = request.get_json(silent=True) or {}
    fields = _material_fields(data, partial=True)
    counted_stock = None
    if 'current_stock' in data:
        counted_stock = parse_decimal(data.get('current_stock'), 'current_stock')
    if 'name' in fields:
        _check_unique_name(user_id, fields['name'], exclude_id=material.id)

    for field, value in fields.items():
        setattr(material, field, value)
    if counted_stock is not None and counted_stock != material.current_stock:
        apply_stock_count(user_id, material, counted_stock)
    log_audit(user_id, "UPDATE", "Material", material.id, f"Updated material {material.name}")
    db.session.commit()
    return jsonify({'success': True, 'material': material.to_dict()})


@materials_blueprint.route('/api/materials/<int:material_id>', methods=['DELETE'])
def delete_material(material_id):
    user_id = get_current_user_id()
    material = get_material(user_id, material_id)

    recipe_count = RecipeLine.query.filter_by(material_id=material.id).count()
    if recipe_count > 0:
        raise ValidationError(
            _('Material "%(name)s" is used in %(count)s recipes and cannot be deleted',
              name=material.name, count=recipe_count))

    name = material.name
    db.session.delete(material)
    log_audit(user_id, "DELETE", "Material", material_id, f"Deleted material {name}")
    db.session.commit()
    return jsonify({'success': True, 'message': _('Material deleted')})


@materials_blueprint.route('/api/materials/<int:material_id>/stock', methods=['POST'])
def update_material_stock(material_id):
    """Update material stock: 'add' applies a signed delta, 'set' records a physical count"""
    user_id = get_current_user_id()
    data = request.get_json(silent=True) or {}
    action_type = data.get('action_type', 'add')
    quantity = data.get('quantity')

    if action_type == 'set':
        new_stock = set_stock(user_id, material_id, quantity)
    elif action_type == 'add':
        delta = parse_decimal(quantity, 'quantity', signed=True)
        new_stock = adjust_stock(user_id, material_id, delta)
    else:
        raise ValidationError(_('action_type must be "add" or "set"'))

    return jsonify({
        'success': True,
        'message': _('Stock updated successfully'),
        'new_stock': float(new_stock)
    })


@materials_blueprint.route('/api/materials/<int:material_id>/stock_logs', methods=['GET'])
def material_stock_logs(material_id):
    user_id = get_current_user_id()
    material = get_material(user_id, material_id)
    logs = StockLog.query.filter_by(material_id=material.id).order_by(StockLog.timestamp.desc(), StockLog.id.desc()).all()
    return jsonify({'material_id': material.id, 'stock_logs': [log.to_dict() for log in logs]})


@materials_blueprint.route('/api/materials/low_stock', methods=['GET'])
def low_stock():
    user_id = get_current_user_id()
    return jsonify({'materials': [m.to_dict() for m in low_stock_materials(user_id)]})


# ----------------------------
# Bulk Material Upload
# ----------------------------
@materials_blueprint.route('/api/materials/import', methods=['POST'])
def import_materials():
    user_id = get_current_user_id()
    file = request.files.get('materials_file')
    if file is None or file.filename == '':
        raise ValidationError(_('No file uploaded'))

    try:
        df = pd.read_csv(file)
    except (ValueError, pd.errors.ParserError) as e:
        raise ValidationError(_('Could not read CSV file: %(error)s', error=str(e)))

    # Normalize column names (strip whitespace, lower case)
    df.columns = df.columns.str.strip().str.lower()
    if 'unit' in df.columns and 'unit_of_measurement' not in df.columns:
        df = df.rename(columns={'unit': 'unit_of_measurement'})
    if 'name' not in df.columns or 'unit_of_measurement' not in df.columns:
        raise ValidationError(_('CSV must have name and unit columns'))

    created, updated, skipped = 0, 0, []
    for index, row in df.iterrows():
        if pd.isna(row['name']) or pd.isna(row['unit_of_measurement']):
            skipped.append({'row': int(index) + 2, 'reason': _('Missing name or unit')})
            continue

        row_data = {'name': str(row['name']).strip(), 'unit_of_measurement': str(row['unit_of_measurement']).strip()}
        for column in ('cost_per_unit', 'low_stock_threshold', 'current_stock'):
            if column in df.columns and not pd.isna(row[column]):
                row_data[column] = row[column]

        try:
            stock = None
            if 'current_stock' in row_data:
                stock = parse_decimal(row_data.pop('current_stock'), 'current_stock')
            material = Material.query.filter_by(user_id=user_id, name=row_data['name']).first()
            fields = _material_fields(row_data, partial=material is not None)
        except ValidationError as e:
            current_app.logger.warning(f"Skipping material import row {int(index) + 2} for {user_id}: {e}")
            skipped.append({'row': int(index) + 2, 'reason': str(e)})
            continue

        if material:
            for field, value in fields.items():
                setattr(material, field, value)
            updated += 1
        else:
            material = Material(user_id=user_id, current_stock=Decimal('0'), **fields)
            db.session.add(material)
            db.session.flush()
            created += 1
        if stock is not None:
            apply_stock_count(user_id, material, stock)

    log_audit(user_id, "IMPORT", "Material", None, f"Imported materials: {created} new, {updated} updated, {len(skipped)} skipped")
    db.session.commit()
    current_app.logger.info(f"Material import for {user_id}: {created} created, {updated} updated, {len(skipped)} skipped")

    return jsonify({'success': True, 'created': created, 'updated': updated, 'skipped': skipped})
