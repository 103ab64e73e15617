from flask import Flask
from flask_cors import CORS
import os
import logging
from dotenv import load_dotenv
from datetime import timedelta

from extensions import db, migrate, jwt, mail, scheduler
from errors import register_error_handlers, register_jwt_handlers
from store import DonationStore, UserStore

load_dotenv()


def _database_url():
    # Fix Postgres URL for SQLAlchemy
    database_url = os.getenv('DATABASE_URL', 'sqlite:///foodshare.db')
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def _engine_options(database_url, timeout_seconds):
    """Store calls give up after STORE_TIMEOUT_SECONDS instead of hanging the request."""
    if not database_url.startswith("postgresql"):
        return {}
    return {
        'pool_pre_ping': True,
        'pool_timeout': timeout_seconds,
        'connect_args': {
            'connect_timeout': timeout_seconds,
            'options': f'-c statement_timeout={timeout_seconds * 1000}'
        }
    }


def create_app(config_overrides=None):
    """
    The Application Factory.
    Creates and configures the app, but does not run it.
    """
    app = Flask(__name__)

    # --- CONFIGURATION ---
    store_timeout = int(os.getenv('STORE_TIMEOUT_SECONDS', '5'))
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'default_secret_key')
    app.config['SQLALCHEMY_DATABASE_URI'] = _database_url()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['STORE_TIMEOUT_SECONDS'] = store_timeout
    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'fallback-secret-key')
    app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(days=int(os.getenv('JWT_EXPIRE_DAYS', '7')))

    # --- DISCOVERY ---
    app.config['SEARCH_STEP_KM'] = float(os.getenv('SEARCH_STEP_KM', '5'))
    app.config['DEFAULT_OPERATIONAL_RADIUS_KM'] = float(os.getenv('DEFAULT_OPERATIONAL_RADIUS_KM', '20'))
    app.config['DEFAULT_LOCATION_RADIUS_KM'] = float(os.getenv('DEFAULT_LOCATION_RADIUS_KM', '10'))
    app.config['MAX_LIST_LIMIT'] = int(os.getenv('MAX_LIST_LIMIT', '200'))

    # --- EMAIL CONFIGURATION ---
    app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
    app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', '587'))
    app.config['MAIL_USE_TLS'] = True
    app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME')
    app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD')
    app.config['MAIL_DEFAULT_SENDER'] = os.getenv('MAIL_USERNAME', 'noreply@foodshare.local')

    if config_overrides:
        app.config.update(config_overrides)

    app.config.setdefault('SQLALCHEMY_ENGINE_OPTIONS', _engine_options(
        app.config['SQLALCHEMY_DATABASE_URI'], app.config['STORE_TIMEOUT_SECONDS']))

    app.logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())
    logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO').upper())

    # --- INITIALIZE EXTENSIONS ---
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    mail.init_app(app)
    # Note: We init scheduler here, but start it in __main__
    scheduler.init_app(app)

    # --- STORES ---
    # Built here and owned by the app; routes reach them through app.extensions
    donation_store = DonationStore(db)
    app.extensions['donation_store'] = donation_store
    app.extensions['user_store'] = UserStore(db)

    @app.teardown_appcontext
    def close_store(exception=None):
        donation_store.close()

    register_error_handlers(app)
    register_jwt_handlers(jwt)

    # --- CORS CONFIGURATION ---
    origins = os.getenv('FRONTEND_ORIGINS', 'http://localhost:3000').split(',')
    CORS(app, resources={
        r"/api/*": {
            "origins": [origin.strip() for origin in origins],
            "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization", "X-Requested-With"],
            "supports_credentials": True
        }
    })

    # --- REGISTER BLUEPRINTS ---
    # Import inside the function to avoid circular imports
    from routes.auth import auth_bp
    from routes.donations import donations_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(donations_bp)

    return app


# --- ENTRY POINT ---
# This only runs if you type 'python app.py'
if __name__ == "__main__":
    import scheduler as jobs  # registers the expiry sweep

    app = create_app()

    # Start the Scheduler only when running the server (not during tests)
    jobs.start_scheduler()

    app.run(debug=os.getenv('FLASK_DEBUG') == '1')
