import os
from datetime import datetime
from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename
from flask import Blueprint, request, jsonify, current_app, url_for
from flask_babel import gettext as _
from ..models import db, Product, Order, ValidationError
from .utils import (
    log_audit, get_current_user_id, get_product, get_recipe, create_product, update_product,
    replace_recipe, recalculate_cogs, max_producible, availability_breakdown, parse_quantity_sold
)

products_blueprint = Blueprint('products', __name__)

ALLOWED_IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.gif', '.webp'}


def _product_payload(product):
    data = product.to_dict()
    data['max_producible'] = max_producible(product.recipe_lines)
    return data


# ----------------------------
# Products Management
# ----------------------------
@products_blueprint.route('/api/products', methods=['GET'])
def list_products():
    user_id = get_current_user_id()
    query = Product.query.filter_by(user_id=user_id)
    search = request.args.get('search')
    if search:
        query = query.filter(Product.name.ilike(f"%{search}%"))
    products = query.order_by(Product.name).all()
    return jsonify({'products': [_product_payload(p) for p in products]})


@products_blueprint.route('/api/products', methods=['POST'])
def add_product():
    user_id = get_current_user_id()
    data = request.get_json(silent=True) or {}
    product = create_product(
        user_id,
        data.get('name'),
        selling_price=data.get('selling_price'),
        photo_url=data.get('photo_url'),
        lines=data.get('recipe')
    )
    return jsonify({'success': True, 'product': _product_payload(product)}), 201


@products_blueprint.route('/api/products/<int:product_id>', methods=['GET'])
def get_product_detail(product_id):
    user_id = get_current_user_id()
    return jsonify({'product': _product_payload(get_product(user_id, product_id))})


@products_blueprint.route('/api/products/<int:product_id>', methods=['PUT'])
def edit_product(product_id):
    """Update product details; a 'recipe' key replaces the whole recipe and recomputes COGS"""
    user_id = get_current_user_id()
    data = request.get_json(silent=True) or {}
    fields = {k: data[k] for k in ('name', 'selling_price', 'photo_url') if k in data}
    product = update_product(user_id, product_id, fields, lines=data.get('recipe'))
    return jsonify({'success': True, 'product': _product_payload(product)})


@products_blueprint.route('/api/products/<int:product_id>', methods=['DELETE'])
def delete_product(product_id):
    user_id = get_current_user_id()
    product = get_product(user_id, product_id)

    order_count = Order.query.filter_by(product_id=product.id).count()
    if order_count > 0:
        raise ValidationError(
            _('Product "%(name)s" has %(count)s orders and cannot be deleted',
              name=product.name, count=order_count))

    name = product.name
    db.session.delete(product)
    log_audit(user_id, "DELETE", "Product", product_id, f"Deleted product {name}")
    db.session.commit()
    return jsonify({'success': True, 'message': _('Product deleted')})


# ----------------------------
# Recipes
# ----------------------------
@products_blueprint.route('/api/products/<int:product_id>/recipe', methods=['GET'])
def get_product_recipe(product_id):
    user_id = get_current_user_id()
    product = get_product(user_id, product_id)
    lines = get_recipe(user_id, product.id)
    return jsonify({
        'product_id': product.id,
        'cogs': float(product.cogs),
        'recipe': [line.to_dict() for line in lines]
    })


@products_blueprint.route('/api/products/<int:product_id>/recipe', methods=['PUT'])
def put_product_recipe(product_id):
    user_id = get_current_user_id()
    data = request.get_json(silent=True) or {}
    product = replace_recipe(user_id, product_id, data.get('recipe'))
    return jsonify({'success': True, 'product': _product_payload(product)})


@products_blueprint.route('/api/products/<int:product_id>/recalculate_cogs', methods=['POST'])
def recalculate_product_cogs(product_id):
    """Pick up current material costs; COGS is otherwise frozen at the last recipe save"""
    user_id = get_current_user_id()
    product = recalculate_cogs(user_id, product_id)
    return jsonify({'success': True, 'product': _product_payload(product)})


@products_blueprint.route('/api/products/<int:product_id>/availability', methods=['GET'])
def product_availability(product_id):
    user_id = get_current_user_id()
    quantity = parse_quantity_sold(request.args.get('quantity', 1))

    lines = get_recipe(user_id, product_id)
    limit = max_producible(lines)
    return jsonify({
        'product_id': product_id,
        'max_producible': limit,
        'quantity': quantity,
        'can_produce': bool(lines) and limit >= quantity,
        'lines': availability_breakdown(lines, quantity)
    })


# ----------------------------
# Product photos
# ----------------------------
@products_blueprint.route('/api/products/<int:product_id>/photo', methods=['POST'])
def upload_product_photo(product_id):
    user_id = get_current_user_id()
    product = get_product(user_id, product_id)

    file = request.files.get('photo')
    if file is None or not file.filename:
        raise ValidationError(_('No photo uploaded'))
    filename = secure_filename(file.filename)
    if os.path.splitext(filename)[1].lower() not in ALLOWED_IMAGE_EXTENSIONS:
        raise ValidationError(_('Unsupported image type'))

    timestamp = datetime.now().strftime('%Y%m%d%H%M%S')
    filename = f"{timestamp}_{product.id}_{os.path.splitext(filename)[0]}.jpg"
    filepath = os.path.join(current_app.config['UPLOAD_FOLDER'], filename)

    try:
        img = Image.open(file)
        # Convert to RGB if necessary (e.g. RGBA)
        if img.mode in ('RGBA', 'P', 'LA'):
            img = img.convert('RGB')
        # Resize to max 1024x1024
        img.thumbnail((1024, 1024), Image.Resampling.LANCZOS)
        img.save(filepath, 'JPEG', quality=85, optimize=True)
    except (UnidentifiedImageError, OSError) as e:
        current_app.logger.warning(f"Photo upload for product {product.id} rejected: {e}")
        raise ValidationError(_('Uploaded file is not a valid image'))

    product.photo_url = url_for('main.serve_image', filename=filename)
    log_audit(user_id, "UPDATE", "Product", product.id, f"Uploaded photo {filename}")
    db.session.commit()
    return jsonify({'success': True, 'photo_url': product.photo_url})
