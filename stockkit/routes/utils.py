from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from flask import current_app, request
from flask_babel import gettext as _
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from ..models import (
    db, Material, Product, RecipeLine, Order, SaleConsumption, StockLog, AuditLog,
    RECORDABLE_STATUSES, ValidationError, NotFoundError, TenantRequiredError,
    InsufficientStockError, ConsistencyError, StockKitError
)

# Predefined units for materials
units_list = ["kg", "g", "L", "ml", "m", "cm", "piece", "unit"]

TENANT_HEADER = 'X-User-Id'
QUANTIZE = Decimal('0.0001')

# Largest values the Numeric(12, 4) and Integer columns hold
MAX_QUANTITY = Decimal('99999999.9999')
MAX_QUANTITY_SOLD = 2 ** 31 - 1


# ----------------------------
# Request helpers
# ----------------------------
def get_current_user_id():
    """Resolve the tenant of the current request from its header."""
    user_id = (request.headers.get(TENANT_HEADER) or '').strip()
    if not user_id:
        raise TenantRequiredError(_('Missing %(header)s header', header=TENANT_HEADER))
    return user_id


def parse_decimal(value, field, allow_zero=True, default=None, signed=False):
    """
    Parse a decimal field, raising ValidationError on bad input.
    Values are non-negative unless signed=True, and never larger in
    magnitude than a stock column holds.
    """
    if value is None or value == '':
        if default is not None:
            return default
        raise ValidationError(_('%(field)s is required', field=field))
    if isinstance(value, bool):
        raise ValidationError(_('%(field)s must be a number', field=field))
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(_('%(field)s must be a number', field=field))
    if not number.is_finite():
        raise ValidationError(_('%(field)s must be a number', field=field))
    if (number < 0 and not signed) or (not allow_zero and number == 0):
        if allow_zero:
            raise ValidationError(_('%(field)s cannot be negative', field=field))
        raise ValidationError(_('%(field)s must be greater than zero', field=field))
    if abs(number) > MAX_QUANTITY:
        raise ValidationError(_('%(field)s cannot exceed %(max)s', field=field, max=MAX_QUANTITY))
    try:
        return number.quantize(QUANTIZE)
    except InvalidOperation:
        raise ValidationError(_('%(field)s must be a number', field=field))


def parse_quantity_sold(value):
    """Quantities sold are positive whole units."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(_('Quantity sold must be a positive whole number'))
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(_('Quantity sold must be a positive whole number'))
    if not number.is_finite() or number != number.to_integral_value() or number <= 0:
        raise ValidationError(_('Quantity sold must be a positive whole number'))
    if number > MAX_QUANTITY_SOLD:
        raise ValidationError(_('Quantity sold cannot exceed %(max)s', max=MAX_QUANTITY_SOLD))
    return int(number)


def parse_date(value):
    if value is None or value == '':
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(_('Invalid date: %(value)s', value=value))


def format_quantity(value):
    """Decimal without trailing zeros or exponent, e.g. 10.0000 -> '10'"""
    return format(Decimal(value).normalize(), 'f')


def log_audit(user_id, action, target_type, target_id=None, details=None):
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details
    )
    db.session.add(log)


# ----------------------------
# Tenant-scoped lookups
# ----------------------------
def get_material(user_id, material_id):
    material = Material.query.filter_by(id=material_id, user_id=user_id).first()
    if not material:
        raise NotFoundError(_('Material %(id)s not found', id=material_id))
    return material


def get_product(user_id, product_id):
    product = Product.query.filter_by(id=product_id, user_id=user_id).first()
    if not product:
        raise NotFoundError(_('Product %(id)s not found', id=product_id))
    return product


def get_order(user_id, order_id):
    order = Order.query.filter_by(id=order_id, user_id=user_id).first()
    if not order:
        raise NotFoundError(_('Order %(id)s not found', id=order_id))
    return order


# ----------------------------
# Material ledger
# ----------------------------
def get_stock(user_id, material_id):
    return get_material(user_id, material_id).current_stock


def low_stock_materials(user_id):
    """Materials at or below their reorder threshold, lowest stock first."""
    return Material.query.filter(
        Material.user_id == user_id,
        Material.current_stock <= Material.low_stock_threshold
    ).order_by(Material.current_stock.asc(), Material.name.asc()).all()


def _write_stock_log(user_id, material, action_type, quantity, order=None):
    db.session.add(StockLog(
        user_id=user_id,
        material_id=material.id,
        order_id=order.id if order else None,
        action_type=action_type,
        quantity=quantity,
        resulting_stock=material.current_stock
    ))


def deduct_material_stock(user_id, material_id, quantity_needed, action_type='sale', order=None):
    """
    Atomically take quantity_needed from a material.
    The decrement only applies while the stored stock covers it, so concurrent
    callers can never drive a material below zero between read and write.
    Raises InsufficientStockError (nothing changed) if the stock is short.
    Does not commit; the caller owns the transaction.
    """
    material = get_material(user_id, material_id)
    quantity_needed = Decimal(quantity_needed).quantize(QUANTIZE)
    if quantity_needed <= 0:
        raise ValidationError(_('Deduction must be greater than zero'))

    result = db.session.execute(
        db.update(Material)
        .where(
            Material.id == material.id,
            Material.user_id == user_id,
            Material.current_stock >= quantity_needed
        )
        .values(current_stock=func.round(Material.current_stock - quantity_needed, 4))
        .execution_options(synchronize_session=False)
    )
    db.session.expire(material, ['current_stock'])

    if result.rowcount != 1:
        available = material.current_stock
        raise InsufficientStockError(
            _('Insufficient stock for %(name)s. Needed: %(needed)s %(unit)s, available: %(available)s %(unit)s',
              name=material.name, needed=format_quantity(quantity_needed),
              unit=material.unit_of_measurement, available=format_quantity(available)),
            material_id=material.id, needed=quantity_needed, available=available
        )

    _write_stock_log(user_id, material, action_type, -quantity_needed, order=order)
    return material.current_stock


def restock_material(user_id, material_id, quantity, action_type='add', order=None):
    """Add quantity to a material's stock. Does not commit."""
    material = get_material(user_id, material_id)
    quantity = parse_decimal(quantity, 'quantity', allow_zero=False)

    result = db.session.execute(
        db.update(Material)
        .where(
            Material.id == material.id,
            Material.user_id == user_id,
            Material.current_stock <= MAX_QUANTITY - quantity
        )
        .values(current_stock=func.round(Material.current_stock + quantity, 4))
        .execution_options(synchronize_session=False)
    )
    db.session.expire(material, ['current_stock'])
    if result.rowcount != 1:
        raise ValidationError(_('Stock of %(name)s cannot exceed %(max)s', name=material.name, max=MAX_QUANTITY))
    _write_stock_log(user_id, material, action_type, quantity, order=order)
    return material.current_stock


def adjust_stock(user_id, material_id, delta):
    """
    Apply a signed delta to a material's stock and commit.
    Negative deltas that exceed the stock on hand are rejected, never clamped.
    """
    delta = parse_decimal(delta, 'quantity', signed=True)
    if delta == 0:
        return get_stock(user_id, material_id)

    try:
        if delta < 0:
            new_stock = deduct_material_stock(user_id, material_id, -delta, action_type='add')
        else:
            new_stock = restock_material(user_id, material_id, delta)
        log_audit(user_id, "UPDATE_STOCK", "Material", material_id, f"add {delta}")
        db.session.commit()
    except StockKitError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Stock adjustment failed for material {material_id}: {e}")
        raise

    current_app.logger.info(f"Adjusted stock of material {material_id} by {delta} for {user_id}, now {new_stock}")
    return new_stock


def apply_stock_count(user_id, material, quantity):
    """Overwrite a material's stock with a counted quantity. Does not commit."""
    previous = material.current_stock if material.current_stock is not None else Decimal('0')
    material.current_stock = quantity
    db.session.flush()
    _write_stock_log(user_id, material, 'set', quantity)
    log_audit(user_id, "STOCK_COUNT", "Material", material.id,
              f"Physical count: {quantity}, System: {previous}, Variance: {quantity - Decimal(previous)}")


def set_stock(user_id, material_id, quantity):
    """Record a physical count as the new stock level and commit."""
    quantity = parse_decimal(quantity, 'quantity')
    material = get_material(user_id, material_id)
    apply_stock_count(user_id, material, quantity)
    db.session.commit()

    current_app.logger.info(f"Set stock of material {material.id} to {quantity} for {user_id}")
    return material.current_stock


# ----------------------------
# Recipe index
# ----------------------------
def get_recipe(user_id, product_id):
    """Ordered recipe lines of a product; each line carries its material."""
    product = get_product(user_id, product_id)
    return RecipeLine.query.filter_by(product_id=product.id).order_by(RecipeLine.position, RecipeLine.id).all()


def compute_cogs(recipe_lines):
    """Sum of quantity_needed * cost_per_unit over the lines. Lines without a material cost nothing."""
    total = Decimal('0')
    for line in recipe_lines:
        material = line.material
        if material is None:
            continue
        total += Decimal(line.quantity_needed) * Decimal(material.cost_per_unit)
    return total.quantize(QUANTIZE)


def validate_recipe_lines(user_id, lines):
    """
    Resolve raw recipe input ({material_id, quantity_needed} mappings) into
    (material, quantity) pairs. Nothing is written.
    """
    if not lines:
        raise ValidationError(_('A recipe needs at least one material'))
    if not isinstance(lines, (list, tuple)):
        raise ValidationError(_('Recipe must be a list of materials'))

    resolved = []
    seen = set()
    for entry in lines:
        if not isinstance(entry, dict):
            raise ValidationError(_('Each recipe line needs a material_id and quantity_needed'))
        material_id = entry.get('material_id')
        try:
            material_id = int(material_id)
        except (TypeError, ValueError):
            raise ValidationError(_('Each recipe line needs a material_id and quantity_needed'))
        if material_id in seen:
            raise ValidationError(_('Material %(id)s appears more than once in the recipe', id=material_id))
        seen.add(material_id)

        quantity = parse_decimal(entry.get('quantity_needed'), 'quantity_needed', allow_zero=False)
        material = Material.query.filter_by(id=material_id, user_id=user_id).first()
        if not material:
            raise ValidationError(_('Unknown material %(id)s in recipe', id=material_id))
        resolved.append((material, quantity))
    return resolved


def _write_recipe(user_id, product, resolved_lines):
    """Delete-all-then-insert the recipe and sync the cached COGS. Does not commit."""
    RecipeLine.query.filter_by(product_id=product.id).delete(synchronize_session=False)
    db.session.expire(product, ['recipe_lines'])

    new_lines = []
    for position, (material, quantity) in enumerate(resolved_lines):
        line = RecipeLine(product_id=product.id, material_id=material.id,
                          quantity_needed=quantity, position=position)
        line.material = material
        db.session.add(line)
        new_lines.append(line)

    product.cogs = compute_cogs(new_lines)
    db.session.flush()
    log_audit(user_id, "UPDATE", "Recipe", product.id,
              f"Replaced recipe of {product.name} with {len(new_lines)} lines, COGS {product.cogs}")
    return new_lines


def _commit_recipe(product):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Recipe save for product {product.id} failed: {e}")
        raise ConsistencyError(_('Recipe could not be saved; no changes were made')) from e


def replace_recipe(user_id, product_id, lines):
    """
    Replace a product's whole recipe and recompute its COGS in one transaction.
    Either both the new lines and the new COGS are stored, or neither is.
    """
    product = get_product(user_id, product_id)
    resolved = validate_recipe_lines(user_id, lines)
    product_id = product.id

    try:
        _write_recipe(user_id, product, resolved)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Recipe save for product {product_id} failed: {e}")
        raise ConsistencyError(_('Recipe could not be saved; no changes were made')) from e
    _commit_recipe(product)

    current_app.logger.info(f"Replaced recipe of product {product_id} for {user_id}, COGS now {product.cogs}")
    return product


def recalculate_cogs(user_id, product_id):
    """Refresh a stale COGS by re-saving the product's current recipe."""
    lines = get_recipe(user_id, product_id)
    return replace_recipe(user_id, product_id, [
        {'material_id': line.material_id, 'quantity_needed': line.quantity_needed}
        for line in lines
    ])


def create_product(user_id, name, selling_price=None, photo_url=None, lines=None):
    name = (name or '').strip()
    if not name:
        raise ValidationError(_('Product name is required'))
    selling_price = parse_decimal(selling_price, 'selling_price', default=Decimal('0'))
    resolved = validate_recipe_lines(user_id, lines) if lines is not None else []

    product = Product(user_id=user_id, name=name, selling_price=selling_price, cogs=Decimal('0'), photo_url=photo_url)
    try:
        db.session.add(product)
        db.session.flush()
        log_audit(user_id, "CREATE", "Product", product.id, f"Created product {product.name}")
        if resolved:
            _write_recipe(user_id, product, resolved)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Creating product {name} failed: {e}")
        raise ConsistencyError(_('Product could not be saved; no changes were made')) from e
    _commit_recipe(product)

    current_app.logger.info(f"Created product {product.id} ({product.name}) for {user_id}")
    return product


def update_product(user_id, product_id, fields, lines=None):
    """Update product details; when lines is given the recipe is replaced in the same transaction."""
    product = get_product(user_id, product_id)
    resolved = validate_recipe_lines(user_id, lines) if lines is not None else None

    changes = {}
    if 'name' in fields:
        changes['name'] = (fields.get('name') or '').strip()
        if not changes['name']:
            raise ValidationError(_('Product name is required'))
    if 'selling_price' in fields:
        changes['selling_price'] = parse_decimal(fields.get('selling_price'), 'selling_price')
    if 'photo_url' in fields:
        changes['photo_url'] = fields.get('photo_url') or None

    for field, value in changes.items():
        setattr(product, field, value)

    try:
        log_audit(user_id, "UPDATE", "Product", product.id, f"Updated product {product.name}")
        if resolved is not None:
            _write_recipe(user_id, product, resolved)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Updating product {product_id} failed: {e}")
        raise ConsistencyError(_('Product could not be saved; no changes were made')) from e
    _commit_recipe(product)
    return product


# ----------------------------
# Availability
# ----------------------------
def units_possible(line):
    """Whole units one recipe line allows; a missing material allows none."""
    material = line.material
    if material is None or line.quantity_needed is None or line.quantity_needed <= 0:
        return 0
    return int(Decimal(material.current_stock) // Decimal(line.quantity_needed))


def max_producible(recipe_lines):
    """Largest number of units producible without any material going negative."""
    recipe_lines = list(recipe_lines)
    if not recipe_lines:
        return 0
    return max(0, min(units_possible(line) for line in recipe_lines))


def max_producible_for_product(user_id, product_id):
    return max_producible(get_recipe(user_id, product_id))


def availability_breakdown(recipe_lines, quantity=1):
    """Per-line view of what a production of `quantity` units needs and what limits it."""
    recipe_lines = list(recipe_lines)
    limit = max_producible(recipe_lines)
    breakdown = []
    for line in recipe_lines:
        material = line.material
        possible = units_possible(line)
        breakdown.append({
            'material_id': line.material_id,
            'material_name': material.name if material else None,
            'unit_of_measurement': material.unit_of_measurement if material else None,
            'available': float(material.current_stock) if material else 0.0,
            'needed_per_unit': float(line.quantity_needed),
            'needed_total': float(line.quantity_needed * quantity),
            'units_possible': possible,
            'is_limiting': possible == limit
        })
    return breakdown


# ----------------------------
# Sale processing
# ----------------------------
def record_sale(user_id, product_id, quantity_sold, order_date=None, status='Completed',
                channel='manual', sale_price=None):
    """
    Record a sale and deduct its materials as one all-or-nothing transaction.
    Every recipe line is decremented conditionally; if any material is short
    the whole sale is rolled back and no order is stored.
    """
    quantity_sold = parse_quantity_sold(quantity_sold)
    if status not in RECORDABLE_STATUSES:
        raise ValidationError(_('Invalid order status: %(status)s', status=status))
    order_date = parse_date(order_date) or date.today()

    product = get_product(user_id, product_id)
    lines = get_recipe(user_id, product.id)
    if not lines:
        raise ValidationError(_('Product "%(name)s" has no recipe and cannot be sold', name=product.name))

    if sale_price is None or sale_price == '':
        resolved_price = product.selling_price
    else:
        resolved_price = parse_decimal(sale_price, 'sale_price')

    try:
        order = Order(
            user_id=user_id,
            product_id=product.id,
            quantity_sold=quantity_sold,
            order_date=order_date,
            status=status,
            channel=channel or 'manual',
            sale_price=resolved_price
        )
        db.session.add(order)
        db.session.flush()

        for line in lines:
            total_needed = Decimal(line.quantity_needed) * quantity_sold
            deduct_material_stock(user_id, line.material_id, total_needed, action_type='sale', order=order)
            db.session.add(SaleConsumption(
                order_id=order.id,
                material_id=line.material_id,
                quantity=total_needed,
                unit_cost=line.material.cost_per_unit
            ))

        log_audit(user_id, "CREATE", "Order", order.id,
                  f"Sold {quantity_sold} x {product.name} at {resolved_price} via {order.channel}")
        db.session.commit()
    except InsufficientStockError as e:
        db.session.rollback()
        current_app.logger.warning(f"Sale of {quantity_sold} x product {product_id} rejected for {user_id}: {e}")
        raise
    except StockKitError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Recording sale of product {product_id} failed: {e}")
        raise

    current_app.logger.info(f"Recorded order {order.id}: {quantity_sold} x product {product_id} for {user_id}")
    return order


def cancel_sale(user_id, order_id):
    """
    Cancel a sale and give back exactly the material quantities it consumed.
    The stored consumption lines are used, not the product's current recipe.
    """
    order = get_order(user_id, order_id)
    if order.status == 'Cancelled':
        raise ValidationError(_('Order %(id)s is already cancelled', id=order.id))

    try:
        for consumption in order.consumptions:
            if consumption.material_id is None:
                continue
            restock_material(user_id, consumption.material_id, consumption.quantity,
                             action_type='cancel', order=order)
        order.status = 'Cancelled'
        order.cancelled_at = datetime.utcnow()
        log_audit(user_id, "CANCEL", "Order", order.id, f"Cancelled order {order.id} and restored materials")
        db.session.commit()
    except StockKitError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Cancelling order {order_id} failed: {e}")
        raise

    current_app.logger.info(f"Cancelled order {order.id} for {user_id}")
    return order
