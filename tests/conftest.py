from decimal import Decimal

import pytest

from stockkit import create_app
from stockkit.models import db, Material
from stockkit.routes.utils import create_product

TENANT = 'tenant-a'
OTHER_TENANT = 'tenant-b'


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SECRET_KEY': 'test',
        'UPLOAD_FOLDER': str(tmp_path / 'images'),
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """App context for calling the stock core directly."""
    with app.app_context():
        yield app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def headers():
    return {'X-User-Id': TENANT}


@pytest.fixture
def make_material(ctx):
    def _make(name='Glass Bead', stock='12', cost='0.10', threshold='0', unit='piece', user_id=TENANT):
        material = Material(
            user_id=user_id,
            name=name,
            unit_of_measurement=unit,
            current_stock=Decimal(stock),
            cost_per_unit=Decimal(cost),
            low_stock_threshold=Decimal(threshold)
        )
        db.session.add(material)
        db.session.commit()
        return material
    return _make


@pytest.fixture
def necklace(make_material):
    """Glass Bead 12 @ 0.10 and Chain 3 @ 1.50; a Necklace takes 5 beads and 1 chain."""
    beads = make_material('Glass Bead', stock='12', cost='0.10')
    chain = make_material('Chain', stock='3', cost='1.50')
    product = create_product(TENANT, 'Necklace', selling_price='25.00', lines=[
        {'material_id': beads.id, 'quantity_needed': 5},
        {'material_id': chain.id, 'quantity_needed': 1},
    ])
    return product, beads, chain


@pytest.fixture
def stock_of(ctx):
    def _stock(material):
        return db.session.get(Material, material.id).current_stock
    return _stock
