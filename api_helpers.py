import os
import logging
import uuid
from datetime import date, datetime
from typing import Dict, List, Optional

from flask import current_app, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from models import db

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'xlsx', 'xls', 'csv'}


class APIError(Exception):
    """Error that is reported to the client as a JSON envelope."""
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict:
        body = {'status': 'error', 'message': self.message}
        if self.details is not None:
            body['details'] = self.details
        return body


class AuthError(APIError):
    status_code = 401


class ForbiddenError(APIError):
    status_code = 403


class NotFoundError(APIError):
    status_code = 404


class ConflictError(APIError):
    status_code = 409


def success(data=None, message: Optional[str] = None, status: int = 200, **extra):
    body = {'status': 'success'}
    if data is not None:
        body['data'] = data
    if message:
        body['message'] = message
    body.update(extra)
    return jsonify(body), status


def register_error_handlers(app):
    @app.errorhandler(APIError)
    def handle_api_error(error):
        if error.status_code >= 500:
            logger.error(f"API error: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'status': 'error', 'message': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        logger.exception(f"Unhandled error: {str(error)}")
        db.session.rollback()
        return jsonify({'status': 'error', 'message': 'Internal server error'}), 500


def get_json_body() -> Dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise APIError('No data provided in request body')
    return data


def require_fields(data: Dict, fields: List[str]) -> None:
    """Check that every field is present and not blank."""
    for field in fields:
        if field not in data or data[field] is None:
            raise APIError(f"Missing required field: '{field}'")
        if not str(data[field]).strip():
            raise APIError(f"Field '{field}' cannot be empty")


def parse_int(value, field: str, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise APIError(f"'{field}' must be an integer")
    if minimum is not None and number < minimum:
        raise APIError(f"'{field}' must be at least {minimum}")
    if maximum is not None and number > maximum:
        raise APIError(f"'{field}' must be at most {maximum}")
    return number


def parse_date(value, field: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip()[:10], '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise APIError(f"'{field}' must be a date in YYYY-MM-DD format")


def require_args(*names: str) -> List[str]:
    """Return query-string values in order, failing when any is missing."""
    values = [request.args.get(name, '').strip() for name in names]
    missing = [name for name, value in zip(names, values) if not value]
    if missing:
        raise APIError(f"Missing required parameters: {', '.join(missing)}")
    return values


def get_or_404(model, ident, label: str):
    obj = db.session.get(model, ident)
    if obj is None:
        raise NotFoundError(f"{label} not found")
    return obj


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def save_upload(field: str = 'file') -> str:
    """Store the uploaded spreadsheet under UPLOAD_FOLDER and return its path."""
    if field not in request.files:
        raise APIError('No file selected')
    file = request.files[field]
    if not file.filename:
        raise APIError('No file selected')
    if not allowed_file(file.filename):
        raise APIError('Invalid file type. Please upload an Excel (.xlsx, .xls) or CSV file')

    stem, extension = file.filename.rsplit('.', 1)
    filename = f"{uuid.uuid4().hex}_{secure_filename(stem) or 'upload'}.{extension.lower()}"
    filepath = os.path.join(current_app.config['UPLOAD_FOLDER'], filename)
    file.save(filepath)
    return filepath


def remove_upload(filepath: str) -> None:
    try:
        os.remove(filepath)
    except OSError as e:
        logger.warning(f"Could not remove upload {filepath}: {str(e)}")


def get_excel_handler():
    return current_app.extensions['excel_handler']
