"""
Apricot Flask Application Factory

Run with:
    flask --app apricot run
"""
import logging
import os
from flask import Flask
from dotenv import load_dotenv

# Silence verbose SQLAlchemy logging
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def create_app(config=None):
    """
    Flask application factory

    Args:
        config: Optional configuration dictionary. SETTINGS overrides the
            environment-derived Settings, ORACLE overrides the oracle built
            from them.

    Returns:
        Flask application instance
    """
    # Load environment variables
    load_dotenv()

    app = Flask(__name__)

    # Default configuration
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key')

    # Load custom configuration
    if config:
        app.config.from_mapping(config)

    from apricot.config import load_settings
    from apricot.services.oracle import create_oracle

    if 'SETTINGS' not in app.config:
        app.config['SETTINGS'] = load_settings()
    if 'ORACLE' not in app.config:
        app.config['ORACLE'] = create_oracle(app.config['SETTINGS'])

    from apricot.database import init_db
    init_db()

    # Register blueprints
    from apricot.routes import main
    app.register_blueprint(main)

    return app
