# Routes package - registers all blueprints with the Flask app


def register_blueprints(app):
    """Register all route blueprints with the Flask app."""
    from .history import history_bp
    from .scanning import scanning_bp
    from .settings import settings_bp

    for blueprint in (scanning_bp, history_bp, settings_bp):
        if blueprint.name not in app.blueprints:
            app.register_blueprint(blueprint)
