import os
from flask import Flask
from config import Config
from extensions import init_extensions
from logger import setup_app_logging
from core import init_core


def create_app(config_class=Config, **core_overrides):
    app = Flask(__name__)
    app.config.from_object(config_class)

    # ------------------------------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------------------------------
    setup_app_logging(app)

    # ----------------------------------------------------------------------------------------------------------------------------------
    # DATABASE URI Fix
    # --------------------------------------------------------------------------------------------------------------------------------------------
    DATABASE_URI = app.config.get("SQLALCHEMY_DATABASE_URI")

    if not DATABASE_URI:
        basedir = os.path.abspath(os.path.dirname(__file__))
        DATABASE_URI = f"sqlite:///{os.path.join(basedir, 'instance', 'fincore.db')}"
        app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URI

    if DATABASE_URI.startswith("postgres://"):
        DATABASE_URI = DATABASE_URI.replace("postgres://", "postgresql+pg8000://", 1)
        app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URI

    if DATABASE_URI.startswith("sqlite:///"):
        os.makedirs(os.path.dirname(DATABASE_URI[len("sqlite:///"):]) or ".", exist_ok=True)

    # --------------------------------------------------------------------------------------------------------------------------
    # Initialize extensions and the financial core
    # ----------------------------------------------------------------------------------------------------------------------------
    init_extensions(app)
    init_core(app, **core_overrides)

    # ------------------------------------------------------------------------------------------------------------------------
    # Register blueprints and CLI commands
    # -----------------------------------------------------------------------------------------------------------------------
    def register_blueprints(app):
        from blueprints.health import bp as health_bp

        app.register_blueprint(health_bp)

    register_blueprints(app)

    from jobs.cli import register_cli
    register_cli(app)

    app.logger.info(f"App created ({app.config.get('FLASK_ENV')}), database {DATABASE_URI.split('://')[0]}")
    return app


# ----------------------
# Local development
# ----------------------
if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    debug_mode = app.config.get("DEBUG", False)
    app.run(debug=debug_mode, host="0.0.0.0", port=port)

#=======================================================================================================
#------------------------THE END OF APP----------------------------------------------------------------
#=======================================================================================================
