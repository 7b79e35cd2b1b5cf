import os
from flask import Flask, request, session, jsonify, current_app, has_request_context
from flask_babel import Babel
from .models import db, StockKitError


def get_locale():
    default = current_app.config['BABEL_DEFAULT_LOCALE']
    if not has_request_context():
        return default
    return request.args.get('lang', session.get('lang', default))


def create_app(test_config=None):
    app = Flask(__name__)

    @app.before_request
    def before_request():
        """Capture language parameter and save to session for persistence across requests"""
        if 'lang' in request.args:
            session['lang'] = request.args.get('lang')

    # Load configurations
    app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv("DATABASE_URL", "sqlite:///stock_kit.db")
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    # Secret key for session management
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['CURRENCY_SYMBOL'] = os.getenv('CURRENCY_SYMBOL', '£')
    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO')

    app.config['BABEL_DEFAULT_LOCALE'] = os.getenv('BABEL_DEFAULT_LOCALE', 'en')
    app.config['BABEL_SUPPORTED_LOCALES'] = ['en']

    # Use /images as the persistent volume for product photos (production)
    # or /tmp/images for local development
    if os.getenv('UPLOAD_FOLDER'):
        app.config['UPLOAD_FOLDER'] = os.getenv('UPLOAD_FOLDER')
    elif os.path.exists('/images'):
        app.config['UPLOAD_FOLDER'] = '/images'
    else:
        app.config['UPLOAD_FOLDER'] = '/tmp/images'

    app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max upload size

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config['LOG_LEVEL'])

    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    Babel(app, locale_selector=get_locale)

    # Initialize database
    db.init_app(app)

    @app.errorhandler(StockKitError)
    def handle_stockkit_error(error):
        return jsonify({'success': False, 'error': str(error)}), error.status_code

    @app.errorhandler(413)
    def handle_too_large(error):
        return jsonify({'success': False, 'error': 'Upload too large'}), 413

    # Register blueprints
    from .routes import (main_blueprint, materials_blueprint, products_blueprint, orders_blueprint,
                         integrations_blueprint, export_blueprint)
    app.register_blueprint(main_blueprint)
    app.register_blueprint(materials_blueprint)
    app.register_blueprint(products_blueprint)
    app.register_blueprint(orders_blueprint)
    app.register_blueprint(integrations_blueprint)
    app.register_blueprint(export_blueprint)

    with app.app_context():
        db.create_all()

    return app
