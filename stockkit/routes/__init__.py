from .main import main_blueprint
from .materials import materials_blueprint
from .products import products_blueprint
from .orders import orders_blueprint
from .integrations import integrations_blueprint
from .export import export_blueprint
