import logging
import os
from flask import Flask, request, session, jsonify
from flask_babel import Babel
from werkzeug.exceptions import HTTPException
from .models import db, MakerCalcError

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_locale():
    selected_locale = request.args.get('lang', session.get('lang', 'en'))
    return selected_locale


def configure_logging(level):
    root = logging.getLogger('makercalc')
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        root.addHandler(handler)


def create_app(test_config=None):
    app = Flask(__name__)

    @app.context_processor
    def inject_globals():
        return {'currency_symbol': os.getenv('CURRENCY_SYMBOL', '$')}

    @app.before_request
    def before_request():
        """Capture language parameter and save to session for persistence across requests"""
        if 'lang' in request.args:
            session['lang'] = request.args.get('lang')

    # Load configurations
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///makercalc.db")
    app.config['SQLALCHEMY_DATABASE_URI'] = DATABASE_URL
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    # Secret key for session management
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')

    app.config['BABEL_DEFAULT_LOCALE'] = 'en'
    app.config['BABEL_SUPPORTED_LOCALES'] = ['en', 'he']

    # Ingredient units must match the referenced material unless conversion is switched on
    app.config['COST_UNIT_CONVERSION'] = os.getenv('COST_UNIT_CONVERSION', 'false').lower() in ('1', 'true', 'yes')
    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO')

    # Use /uploads as the persistent volume for attachments (production)
    # or /tmp/makercalc_uploads for local development
    if os.path.exists('/uploads'):
        app.config['UPLOAD_FOLDER'] = '/uploads'
    else:
        app.config['UPLOAD_FOLDER'] = '/tmp/makercalc_uploads'

    app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max upload size

    if test_config:
        app.config.update(test_config)

    configure_logging(app.config['LOG_LEVEL'])

    if not os.path.exists(app.config['UPLOAD_FOLDER']):
        try:
            os.makedirs(app.config['UPLOAD_FOLDER'])
        except OSError:
            # Directory might already exist or we don't have permissions
            pass

    Babel(app, locale_selector=get_locale)

    # Initialize database
    db.init_app(app)

    @app.errorhandler(MakerCalcError)
    def handle_domain_error(error):
        db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'error': error.name, 'message': error.description}), error.code

    # Register blueprints
    from .routes import (
        main_blueprint, vendors_blueprint, categories_blueprint, raw_materials_blueprint,
        formulations_blueprint, files_blueprint, subscription_blueprint, reports_blueprint,
        import_export_blueprint, admin_blueprint
    )
    app.register_blueprint(main_blueprint)
    app.register_blueprint(vendors_blueprint)
    app.register_blueprint(categories_blueprint)
    app.register_blueprint(import_export_blueprint)
    app.register_blueprint(raw_materials_blueprint)
    app.register_blueprint(formulations_blueprint)
    app.register_blueprint(files_blueprint)
    app.register_blueprint(subscription_blueprint)
    app.register_blueprint(reports_blueprint)
    app.register_blueprint(admin_blueprint)

    with app.app_context():
        db.create_all()

    return app
