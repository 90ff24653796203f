import os
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(app):
    """
    Configure console and dated file logging for the stackvault logger.

    Every line has the form ``[YYYY-MM-DD HH:MM:SS] [LEVEL] message`` and goes
    both to stderr and to ``<LOG_DIR>/stackvault_<YYYYMMDD>.log``.
    """

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    # File handler
    log_file = os.path.join(log_dir, f"stackvault_{datetime.now().strftime('%Y%m%d')}.log")
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    # Replace handlers from a previous factory call in the same process
    package_logger = logging.getLogger('stackvault')
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(log_level)
    package_logger.addHandler(console_handler)
    package_logger.addHandler(file_handler)
    package_logger.propagate = False

    app.logger.setLevel(log_level)

    package_logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)}, file: {log_file})")


def create_app(config_name=None, overrides=None):
    """
    Flask application factory.

    Args:
        config_name: Key into ``stackvault.config.config``; defaults to
            ``STACKVAULT_ENV`` or ``production``
        overrides: Optional mapping applied on top of the config class
            before any directory or database is touched
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('STACKVAULT_ENV', 'production')

    from stackvault.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure the history database directory exists
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(db_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from stackvault.routes import status_routes
    app.register_blueprint(status_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Create history tables
    from stackvault import models  # noqa: F401
    with app.app_context():
        db.create_all()

    return app


def get_backup_settings(app=None):
    """
    BackupSettings for an app, built from its config on first use.

    Args:
        app: Flask app; defaults to ``current_app``

    Raises:
        ConfigurationInvalid: If the configuration is malformed
    """
    from flask import current_app
    from stackvault.settings import BackupSettings

    app = app or current_app._get_current_object()
    settings = app.extensions.get('stackvault.settings')
    if settings is None:
        settings = BackupSettings.from_mapping(app.config)
        app.extensions['stackvault.settings'] = settings
    return settings
