from decimal import Decimal

import pytest

from stockkit.models import db, Material, Product, RecipeLine, ValidationError, NotFoundError, ConsistencyError
from stockkit.routes import utils
from stockkit.routes.utils import (
    create_product, replace_recipe, get_recipe, recalculate_cogs, max_producible_for_product
)
from conftest import TENANT, OTHER_TENANT


def test_new_recipe_sets_cogs(necklace):
    product, beads, chain = necklace
    product = db.session.get(Product, product.id)

    assert product.cogs == Decimal('2.00')
    assert [(l.material_id, l.quantity_needed) for l in get_recipe(TENANT, product.id)] == [
        (beads.id, Decimal('5')), (chain.id, Decimal('1'))
    ]


def test_replace_recipe_swaps_whole_line_set(necklace, make_material):
    product, beads, chain = necklace
    clasp = make_material('Clasp', stock='10', cost='0.75')

    replace_recipe(TENANT, product.id, [
        {'material_id': clasp.id, 'quantity_needed': 2},
        {'material_id': beads.id, 'quantity_needed': '3.5'},
    ])

    lines = get_recipe(TENANT, product.id)
    assert [(l.material_id, l.quantity_needed) for l in lines] == [
        (clasp.id, Decimal('2')), (beads.id, Decimal('3.5'))
    ]
    assert RecipeLine.query.filter_by(product_id=product.id, material_id=chain.id).count() == 0
    # 2 * 0.75 + 3.5 * 0.10
    assert db.session.get(Product, product.id).cogs == Decimal('1.85')


@pytest.mark.parametrize('lines', [
    [],
    None,
    [{'material_id': 1, 'quantity_needed': 0}],
    [{'material_id': 1, 'quantity_needed': -2}],
    [{'material_id': 1, 'quantity_needed': 'lots'}],
    [{'quantity_needed': 1}],
    [{'material_id': 1, 'quantity_needed': 1}, {'material_id': 1, 'quantity_needed': 2}],
])
def test_invalid_recipe_is_rejected_without_changes(necklace, lines):
    product, beads, chain = necklace
    lines = [dict(entry, material_id=beads.id) if 'material_id' in entry else entry for entry in lines or []] or lines

    with pytest.raises(ValidationError):
        replace_recipe(TENANT, product.id, lines)

    assert len(get_recipe(TENANT, product.id)) == 2
    assert db.session.get(Product, product.id).cogs == Decimal('2.00')


def test_recipe_cannot_use_another_tenants_material(necklace, make_material):
    product, beads, chain = necklace
    foreign = make_material('Silver Wire', stock='50', cost='0.20', user_id=OTHER_TENANT)

    with pytest.raises(ValidationError):
        replace_recipe(TENANT, product.id, [{'material_id': foreign.id, 'quantity_needed': 1}])


def test_replace_recipe_of_unknown_product(ctx):
    with pytest.raises(NotFoundError):
        replace_recipe(TENANT, 4242, [{'material_id': 1, 'quantity_needed': 1}])


def test_cogs_stays_stale_until_recalculated(necklace):
    product, beads, chain = necklace
    chain = db.session.get(Material, chain.id)
    chain.cost_per_unit = Decimal('2.50')
    db.session.commit()

    assert db.session.get(Product, product.id).cogs == Decimal('2.00')

    recalculate_cogs(TENANT, product.id)
    assert db.session.get(Product, product.id).cogs == Decimal('3.00')


def test_failed_cogs_write_rolls_back_recipe(necklace, make_material, monkeypatch):
    product, beads, chain = necklace
    clasp = make_material('Clasp', stock='10', cost='0.75')
    # A negative COGS violates the product's check constraint at flush time
    monkeypatch.setattr(utils, 'compute_cogs', lambda lines: Decimal('-1'))

    with pytest.raises(ConsistencyError):
        replace_recipe(TENANT, product.id, [{'material_id': clasp.id, 'quantity_needed': 1}])

    lines = get_recipe(TENANT, product.id)
    assert [l.material_id for l in lines] == [beads.id, chain.id]
    assert db.session.get(Product, product.id).cogs == Decimal('2.00')


def test_create_product_with_invalid_recipe_creates_nothing(make_material):
    beads = make_material('Glass Bead')

    with pytest.raises(ValidationError):
        create_product(TENANT, 'Bracelet', selling_price='10', lines=[{'material_id': beads.id, 'quantity_needed': 0}])

    assert Product.query.filter_by(user_id=TENANT).count() == 0


def test_product_without_recipe_has_no_availability(ctx):
    product = create_product(TENANT, 'Blank', selling_price='5')
    assert db.session.get(Product, product.id).cogs == Decimal('0')
    assert max_producible_for_product(TENANT, product.id) == 0
