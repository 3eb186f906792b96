import os
import logging

import click
from flask import Flask
from flask_cors import CORS

from api_helpers import register_error_handlers, success
from excel_handler import ExcelHandler
from models import db, seed_departments

# Set up logging
logging.basicConfig(level=getattr(logging, os.environ.get("LOG_LEVEL", "DEBUG").upper(), logging.DEBUG))


def create_app(config=None):
    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.environ.get("SESSION_SECRET", "dev-secret-key-change-in-production-0000")

    # Configuration
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get("DATABASE_URL", "sqlite:///erp.db")
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['JWT_EXPIRES_HOURS'] = int(os.environ.get("JWT_EXPIRES_HOURS", "8"))
    app.config['UPLOAD_FOLDER'] = os.environ.get("UPLOAD_FOLDER", "uploads")
    app.config['EXPORT_FOLDER'] = os.environ.get("EXPORT_FOLDER", "exports")
    app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max file size
    app.config['FRONTEND_URL'] = os.environ.get("FRONTEND_URL", "http://localhost:5173")
    app.config['CORE_COURSE_STRENGTH'] = int(os.environ.get("CORE_COURSE_STRENGTH", "120"))

    if config:
        app.config.update(config)

    # Ensure directories exist
    for key in ('UPLOAD_FOLDER', 'EXPORT_FOLDER'):
        app.config[key] = os.path.abspath(app.config[key])
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    os.makedirs(app.config['EXPORT_FOLDER'], exist_ok=True)

    CORS(app, origins=[app.config['FRONTEND_URL']], supports_credentials=True)
    db.init_app(app)
    app.extensions['excel_handler'] = ExcelHandler(app.config['EXPORT_FOLDER'])

    register_error_handlers(app)
    register_blueprints(app)
    register_commands(app)

    @app.route('/api/health')
    def health():
        return success(message='Server running')

    return app


def register_blueprints(app):
    from auth import auth_bp
    from academic_routes import academic_bp
    from student_routes import student_admin_bp, student_bp
    from staff_routes import staff_bp
    from marks_routes import marks_bp
    from grade_routes import grade_bp
    from timetable_routes import timetable_bp
    from attendance_routes import attendance_bp
    from cbcs_routes import cbcs_bp
    from regulation_routes import regulation_bp
    from nptel_routes import nptel_admin_bp, nptel_student_bp

    for blueprint in (auth_bp, academic_bp, student_admin_bp, student_bp, staff_bp, marks_bp,
                      grade_bp, timetable_bp, attendance_bp, cbcs_bp, regulation_bp, nptel_admin_bp,
                      nptel_student_bp):
        app.register_blueprint(blueprint)


def register_commands(app):
    @app.cli.command('init-db')
    def init_db_command():
        """Create tables and seed the default departments."""
        db.create_all()
        added = seed_departments()
        click.echo(f"Database initialised, {added} departments added")

    @app.cli.command('seed-demo')
    @click.option('--students', default=20, help='Number of demo students to create.')
    def seed_demo_command(students):
        """Load a demo batch, semester, courses and students."""
        from seed_data import seed_demo

        db.create_all()
        seed_departments()
        summary = seed_demo(student_count=students)
        click.echo(f"Demo data loaded: {summary}")

    from create_test_data import generate_roster_command
    app.cli.add_command(generate_roster_command)


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
        seed_departments()
    app.run(host='0.0.0.0', port=5000, debug=True)
