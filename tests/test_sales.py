from decimal import Decimal

import pytest

from stockkit.models import (
    db, Order, Product, SaleConsumption, StockLog, ValidationError, NotFoundError, InsufficientStockError
)
from stockkit.routes.utils import (
    record_sale, cancel_sale, replace_recipe, create_product, max_producible_for_product,
    adjust_stock, set_stock, low_stock_materials
)
from conftest import TENANT, OTHER_TENANT


def test_sale_deducts_recipe_times_quantity(necklace, stock_of):
    product, beads, chain = necklace

    order = record_sale(TENANT, product.id, 2)

    assert order.status == 'Completed'
    assert stock_of(beads) == Decimal('2')
    assert stock_of(chain) == Decimal('1')
    assert max_producible_for_product(TENANT, product.id) == 0


def test_sale_leaves_unrelated_materials_alone(necklace, make_material, stock_of):
    product, beads, chain = necklace
    ribbon = make_material('Ribbon', stock='7.5', unit='m')

    record_sale(TENANT, product.id, 1)

    assert stock_of(ribbon) == Decimal('7.5')


def test_product_without_recipe_cannot_be_sold(ctx):
    product = create_product(TENANT, 'Blank', selling_price='5')

    with pytest.raises(ValidationError):
        record_sale(TENANT, product.id, 1)

    assert Order.query.count() == 0


@pytest.mark.parametrize('quantity', [0, -1, 2.5, 'abc', None, True])
def test_invalid_quantity_is_rejected(necklace, stock_of, quantity):
    product, beads, chain = necklace

    with pytest.raises(ValidationError):
        record_sale(TENANT, product.id, quantity)

    assert Order.query.count() == 0
    assert stock_of(beads) == Decimal('12')


def test_numeric_string_quantity_is_accepted(necklace, stock_of):
    product, beads, chain = necklace
    record_sale(TENANT, product.id, '1')
    assert stock_of(beads) == Decimal('7')


def test_sale_of_unknown_or_foreign_product(necklace):
    product, beads, chain = necklace

    with pytest.raises(NotFoundError):
        record_sale(TENANT, 9999, 1)
    with pytest.raises(NotFoundError):
        record_sale(OTHER_TENANT, product.id, 1)


def test_sale_price_defaults_to_selling_price(necklace):
    product, beads, chain = necklace

    default = record_sale(TENANT, product.id, 1)
    custom = record_sale(TENANT, product.id, 1, sale_price='19.99', channel='etsy')

    assert default.sale_price == Decimal('25.00')
    assert custom.sale_price == Decimal('19.99')
    assert custom.channel == 'etsy'
    assert custom.revenue == Decimal('19.99')


def test_sale_records_consumption_and_stock_log(necklace):
    product, beads, chain = necklace

    order = record_sale(TENANT, product.id, 2)

    consumed = {c.material_id: c.quantity for c in SaleConsumption.query.filter_by(order_id=order.id)}
    assert consumed == {beads.id: Decimal('10'), chain.id: Decimal('2')}
    logs = StockLog.query.filter_by(order_id=order.id, action_type='sale').order_by(StockLog.id).all()
    assert [(log.material_id, log.quantity, log.resulting_stock) for log in logs] == [
        (beads.id, Decimal('-10'), Decimal('2')),
        (chain.id, Decimal('-2'), Decimal('1')),
    ]
    assert db.session.get(Order, order.id).material_cost == Decimal('4.00')


def test_pending_sale_also_deducts(necklace, stock_of):
    product, beads, chain = necklace

    order = record_sale(TENANT, product.id, 1, status='Pending')

    assert order.status == 'Pending'
    assert stock_of(chain) == Decimal('2')


@pytest.mark.parametrize('status', ['Cancelled', 'Shipped'])
def test_sale_cannot_be_recorded_with_other_status(necklace, status):
    product, beads, chain = necklace
    with pytest.raises(ValidationError):
        record_sale(TENANT, product.id, 1, status=status)


def test_short_material_rejects_whole_sale(necklace, stock_of):
    product, beads, chain = necklace
    # Chain first so it is decremented before the beads line fails
    replace_recipe(TENANT, product.id, [
        {'material_id': chain.id, 'quantity_needed': 1},
        {'material_id': beads.id, 'quantity_needed': 5},
    ])

    with pytest.raises(InsufficientStockError) as exc:
        record_sale(TENANT, product.id, 3)

    assert exc.value.material_id == beads.id
    assert 'Glass Bead' in str(exc.value)
    assert stock_of(chain) == Decimal('3')
    assert stock_of(beads) == Decimal('12')
    assert Order.query.count() == 0
    assert SaleConsumption.query.count() == 0
    assert StockLog.query.filter_by(action_type='sale').count() == 0


def test_sequential_sales_accept_only_what_fits(ctx, make_material, stock_of):
    thread = make_material('Thread', stock='10', unit='m')
    product = create_product(TENANT, 'Tassel', selling_price='3', lines=[
        {'material_id': thread.id, 'quantity_needed': 3}
    ])

    accepted = []
    for quantity in [2, 2, 1, 1]:
        try:
            accepted.append(record_sale(TENANT, product.id, quantity).quantity_sold)
        except InsufficientStockError:
            pass

    assert accepted == [2, 1]
    assert stock_of(thread) == Decimal('1')
    assert Order.query.count() == 2


def test_availability_read_does_not_reserve_stock(necklace, stock_of):
    product, beads, chain = necklace

    # Two clerks both see room for 2 necklaces before either sells
    seen = [max_producible_for_product(TENANT, product.id) for _ in range(2)]
    assert seen == [2, 2]

    record_sale(TENANT, product.id, 2)
    with pytest.raises(InsufficientStockError):
        record_sale(TENANT, product.id, 2)

    assert stock_of(beads) == Decimal('2')
    assert stock_of(chain) == Decimal('1')


def test_cancel_restores_consumed_quantities(necklace, make_material, stock_of):
    product, beads, chain = necklace
    order = record_sale(TENANT, product.id, 2)

    # Recipe changes after the sale must not affect what is given back
    clasp = make_material('Clasp', stock='4')
    replace_recipe(TENANT, product.id, [{'material_id': clasp.id, 'quantity_needed': 1}])

    cancelled = cancel_sale(TENANT, order.id)

    assert cancelled.status == 'Cancelled'
    assert cancelled.cancelled_at is not None
    assert stock_of(beads) == Decimal('12')
    assert stock_of(chain) == Decimal('3')
    assert stock_of(clasp) == Decimal('4')
    assert StockLog.query.filter_by(order_id=order.id, action_type='cancel').count() == 2


def test_cancel_twice_is_rejected(necklace, stock_of):
    product, beads, chain = necklace
    order = record_sale(TENANT, product.id, 1)
    cancel_sale(TENANT, order.id)

    with pytest.raises(ValidationError):
        cancel_sale(TENANT, order.id)

    assert stock_of(beads) == Decimal('12')


def test_cancel_foreign_order(necklace):
    product, beads, chain = necklace
    order = record_sale(TENANT, product.id, 1)
    with pytest.raises(NotFoundError):
        cancel_sale(OTHER_TENANT, order.id)


def test_adjust_stock_rejects_overdraw(make_material, stock_of):
    beads = make_material('Glass Bead', stock='4')

    with pytest.raises(InsufficientStockError):
        adjust_stock(TENANT, beads.id, '-5')
    assert stock_of(beads) == Decimal('4')

    assert adjust_stock(TENANT, beads.id, '-4') == Decimal('0')
    assert adjust_stock(TENANT, beads.id, '2.25') == Decimal('2.25')


def test_set_stock_overwrites_and_logs(make_material, stock_of):
    beads = make_material('Glass Bead', stock='4')

    set_stock(TENANT, beads.id, '9.5')

    assert stock_of(beads) == Decimal('9.5')
    log = StockLog.query.filter_by(material_id=beads.id, action_type='set').one()
    assert log.resulting_stock == Decimal('9.5')
    with pytest.raises(ValidationError):
        set_stock(TENANT, beads.id, '-1')


def test_low_stock_materials_lowest_first(make_material):
    make_material('Wire', stock='5', threshold='10')
    make_material('Clasp', stock='1', threshold='2')
    make_material('Bead', stock='50', threshold='10')
    make_material('Hook', stock='1', threshold='1', user_id=OTHER_TENANT)

    assert [m.name for m in low_stock_materials(TENANT)] == ['Clasp', 'Wire']


def test_quantity_beyond_integer_column_is_rejected(necklace, stock_of):
    product, beads, chain = necklace

    with pytest.raises(ValidationError):
        record_sale(TENANT, product.id, 10 ** 20)

    assert Order.query.count() == 0
    assert stock_of(beads) == Decimal('12')


def test_largest_quantity_is_short_not_broken(necklace, stock_of):
    product, beads, chain = necklace

    with pytest.raises(InsufficientStockError):
        record_sale(TENANT, product.id, 2 ** 31 - 1)

    assert stock_of(beads) == Decimal('12')


@pytest.mark.parametrize('delta', ['1e30', '-1e30', '123456789', '9' * 40])
def test_adjust_stock_rejects_values_too_large_to_store(make_material, stock_of, delta):
    beads = make_material('Glass Bead', stock='4')

    with pytest.raises(ValidationError):
        adjust_stock(TENANT, beads.id, delta)

    assert stock_of(beads) == Decimal('4')


def test_restock_cannot_overflow_stock_column(make_material, stock_of):
    beads = make_material('Glass Bead', stock='4')
    set_stock(TENANT, beads.id, '99999999')

    with pytest.raises(ValidationError):
        adjust_stock(TENANT, beads.id, '1')

    assert stock_of(beads) == Decimal('99999999')
    assert adjust_stock(TENANT, beads.id, '0.9999') == Decimal('99999999.9999')
