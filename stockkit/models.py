from datetime import datetime, date
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Order statuses a sale can be recorded with; 'Cancelled' is only reachable through cancellation
ORDER_STATUSES = ['Completed', 'Pending', 'Cancelled']
RECORDABLE_STATUSES = ['Completed', 'Pending']

# Stock log action types
STOCK_ACTIONS = ['add', 'set', 'sale', 'cancel']


# Custom exceptions
class StockKitError(Exception):
    """Base class for errors raised by the stock core"""
    status_code = 400


class ValidationError(StockKitError):
    """Raised when input is rejected before any mutation happens"""
    status_code = 400


class TenantRequiredError(StockKitError):
    """Raised when a request does not identify its tenant"""
    status_code = 401


class NotFoundError(StockKitError):
    """Raised when a record does not exist for the requesting tenant"""
    status_code = 404


class InsufficientStockError(StockKitError):
    """Raised when a deduction would drive a material's stock below zero"""
    status_code = 409

    def __init__(self, message, material_id=None, needed=None, available=None):
        super().__init__(message)
        self.material_id = material_id
        self.needed = needed
        self.available = available


class ConsistencyError(StockKitError):
    """Raised when a recipe and its COGS could not be persisted together"""
    status_code = 500


def _num(value):
    return float(value) if value is not None else None


class Material(db.Model):
    __tablename__ = 'material'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    unit_of_measurement = db.Column(db.String(50), nullable=False)
    current_stock = db.Column(db.Numeric(12, 4), nullable=False, default=0)
    cost_per_unit = db.Column(db.Numeric(12, 4), nullable=False, default=0)
    low_stock_threshold = db.Column(db.Numeric(12, 4), nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    stock_logs = db.relationship('StockLog', backref='material', lazy=True, cascade='all, delete-orphan')

    __table_args__ = (
        db.CheckConstraint('current_stock >= 0', name='ck_material_stock_non_negative'),
        db.UniqueConstraint('user_id', 'name', name='uq_material_user_name'),
    )

    @property
    def is_low_stock(self):
        return self.current_stock <= self.low_stock_threshold

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'unit_of_measurement': self.unit_of_measurement,
            'current_stock': _num(self.current_stock),
            'cost_per_unit': _num(self.cost_per_unit),
            'low_stock_threshold': _num(self.low_stock_threshold),
            'is_low_stock': self.is_low_stock,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }


class Product(db.Model):
    __tablename__ = 'product'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    selling_price = db.Column(db.Numeric(12, 4), nullable=False, default=0)
    # Cached per-unit cost; written only when the recipe is saved
    cogs = db.Column(db.Numeric(12, 4), nullable=False, default=0)
    photo_url = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    recipe_lines = db.relationship('RecipeLine', backref='product', lazy=True,
                                   order_by='RecipeLine.position', cascade='all, delete-orphan')

    __table_args__ = (
        db.CheckConstraint('selling_price >= 0', name='ck_product_price_non_negative'),
        db.CheckConstraint('cogs >= 0', name='ck_product_cogs_non_negative'),
    )

    def to_dict(self, include_recipe=True):
        data = {
            'id': self.id,
            'name': self.name,
            'selling_price': _num(self.selling_price),
            'cogs': _num(self.cogs),
            'photo_url': self.photo_url,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }
        if include_recipe:
            data['recipe'] = [line.to_dict() for line in self.recipe_lines]
        return data


class RecipeLine(db.Model):
    __tablename__ = 'recipe_line'

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    material_id = db.Column(db.Integer, db.ForeignKey('material.id'), nullable=False)
    quantity_needed = db.Column(db.Numeric(12, 4), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    material = db.relationship('Material', backref='recipe_lines')

    __table_args__ = (
        db.CheckConstraint('quantity_needed > 0', name='ck_recipe_line_quantity_positive'),
        db.UniqueConstraint('product_id', 'material_id', name='uq_recipe_line_material'),
    )

    def to_dict(self):
        material = self.material
        return {
            'id': self.id,
            'material_id': self.material_id,
            'material_name': material.name if material else None,
            'unit_of_measurement': material.unit_of_measurement if material else None,
            'quantity_needed': _num(self.quantity_needed),
            'line_cost': _num(self.quantity_needed * material.cost_per_unit) if material else None
        }


class Order(db.Model):
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    quantity_sold = db.Column(db.Integer, nullable=False)
    order_date = db.Column(db.Date, default=date.today, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='Completed')
    channel = db.Column(db.String(50), nullable=False, default='manual')
    sale_price = db.Column(db.Numeric(12, 4), nullable=False)  # Resolved unit price
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    product = db.relationship('Product', backref='orders')
    consumptions = db.relationship('SaleConsumption', backref='order', lazy=True, cascade='all, delete-orphan')

    __table_args__ = (
        db.CheckConstraint('quantity_sold > 0', name='ck_order_quantity_positive'),
    )

    @property
    def revenue(self):
        return self.sale_price * self.quantity_sold

    @property
    def material_cost(self):
        return sum((c.quantity * c.unit_cost for c in self.consumptions), 0)

    def to_dict(self):
        return {
            'id': self.id,
            'product_id': self.product_id,
            'product_name': self.product.name if self.product else None,
            'quantity_sold': self.quantity_sold,
            'order_date': self.order_date.isoformat() if self.order_date else None,
            'status': self.status,
            'channel': self.channel,
            'sale_price': _num(self.sale_price),
            'revenue': _num(self.revenue),
            'material_cost': _num(self.material_cost),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'consumptions': [c.to_dict() for c in self.consumptions]
        }


class SaleConsumption(db.Model):
    """Exact material quantities taken by a sale, used to restore stock on cancellation"""
    __tablename__ = 'sale_consumption'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    material_id = db.Column(db.Integer, db.ForeignKey('material.id'), nullable=True)
    quantity = db.Column(db.Numeric(12, 4), nullable=False)
    unit_cost = db.Column(db.Numeric(12, 4), nullable=False)

    material = db.relationship('Material', backref='consumptions')

    def to_dict(self):
        return {
            'material_id': self.material_id,
            'material_name': self.material.name if self.material else None,
            'quantity': _num(self.quantity),
            'unit_cost': _num(self.unit_cost)
        }


class StockLog(db.Model):
    __tablename__ = 'stock_log'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    material_id = db.Column(db.Integer, db.ForeignKey('material.id'), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=True)
    action_type = db.Column(db.String(10), nullable=False)  # 'add', 'set', 'sale' or 'cancel'
    quantity = db.Column(db.Numeric(12, 4), nullable=False)  # Signed delta, or the counted value for 'set'
    resulting_stock = db.Column(db.Numeric(12, 4), nullable=False)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'material_id': self.material_id,
            'order_id': self.order_id,
            'action_type': self.action_type,
            'quantity': _num(self.quantity),
            'resulting_stock': _num(self.resulting_stock),
            'timestamp': self.timestamp.isoformat() if self.timestamp else None
        }


class AuditLog(db.Model):
    __tablename__ = 'audit_log'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    action = db.Column(db.String(50), nullable=False)
    target_type = db.Column(db.String(50), nullable=False)
    target_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': self.timestamp.strftime('%Y-%m-%d %H:%M:%S'),
            'action': self.action,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'details': self.details
        }


class ExternalProduct(db.Model):
    """Maps a product listed on a sales channel to a local product"""
    __tablename__ = 'external_product'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    platform = db.Column(db.String(20), nullable=False)
    external_product_id = db.Column(db.String(100), nullable=False)
    local_product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=True)
    last_synced_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    local_product = db.relationship('Product', backref='external_products')

    __table_args__ = (
        db.UniqueConstraint('user_id', 'platform', 'external_product_id', name='uq_external_product'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'platform': self.platform,
            'external_product_id': self.external_product_id,
            'local_product_id': self.local_product_id,
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None
        }


class SyncLog(db.Model):
    __tablename__ = 'sync_log'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    platform = db.Column(db.String(20), nullable=False)
    sync_type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # 'success', 'partial' or 'error'
    items_processed = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'platform': self.platform,
            'sync_type': self.sync_type,
            'status': self.status,
            'items_processed': self.items_processed,
            'error_message': self.error_message,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
