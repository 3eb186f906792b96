import logging
import re
from datetime import datetime, timedelta, timezone
from functools import wraps

import jwt
from flask import Blueprint, current_app, g, request
from werkzeug.security import check_password_hash, generate_password_hash

from api_helpers import (APIError, AuthError, ConflictError, ForbiddenError, get_json_body, parse_int,
                         require_fields, success)
from models import Department, User, db

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')

STAFF_ID_PATTERN = re.compile(r'^[A-Z]{3}[0-9]{3}$')
REGISTRABLE_ROLES = ('ADMIN', 'STAFF')


def create_token(user: User) -> str:
    hours = current_app.config.get('JWT_EXPIRES_HOURS', 8)
    payload = {
        'userId': user.id,
        'role': user.role,
        'exp': datetime.now(timezone.utc) + timedelta(hours=hours),
    }
    return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm='HS256')


def _user_from_request() -> User:
    header = request.headers.get('Authorization', '')
    parts = header.split(' ')
    if len(parts) != 2 or parts[0].lower() != 'bearer' or not parts[1]:
        raise AuthError('Authorization token is missing')

    try:
        data = jwt.decode(parts[1], current_app.config['SECRET_KEY'], algorithms=['HS256'])
    except jwt.ExpiredSignatureError:
        raise AuthError('Token has expired')
    except jwt.InvalidTokenError:
        raise AuthError('Token is invalid')

    user = db.session.get(User, data.get('userId'))
    if user is None or not user.is_active:
        raise AuthError('User not found or inactive')
    return user


def token_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        g.current_user = _user_from_request()
        return f(*args, **kwargs)
    return decorated


def roles_required(*roles):
    """Require a valid token whose user has one of the given roles."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = _user_from_request()
            if user.role not in roles:
                raise ForbiddenError('You do not have permission to perform this action')
            g.current_user = user
            return f(*args, **kwargs)
        return decorated
    return decorator


def create_user(name, email, password, role, department_id=None, staff_id=None, roll_number=None) -> User:
    """Validate and add a user to the session. The caller commits."""
    email = (email or '').strip().lower()
    if not email or '@' not in email:
        raise APIError('A valid email is required')
    if not password or len(password) < 6:
        raise APIError('Password must be at least 6 characters')
    if User.query.filter_by(email=email).first():
        raise ConflictError('Email already registered')

    if department_id:
        department_id = parse_int(department_id, 'departmentId')
    if role == 'STAFF':
        if not department_id:
            raise APIError('departmentId is required for staff')
        department = db.session.get(Department, department_id)
        if department is None or not department.is_active:
            raise APIError('Invalid or inactive department')
        if staff_id:
            staff_id = staff_id.strip().upper()
            if not STAFF_ID_PATTERN.match(staff_id):
                raise APIError('staffId must be 3 uppercase letters followed by 3 digits')
            if User.query.filter_by(staff_id=staff_id, department_id=department_id).first():
                raise ConflictError('staffId already exists in this department')

    user = User(
        name=name.strip(),
        email=email,
        password_hash=generate_password_hash(password),
        role=role,
        department_id=department_id,
        staff_id=staff_id or None,
        roll_number=roll_number,
    )
    db.session.add(user)
    return user


@auth_bp.route('/register', methods=['POST'])
def register():
    # Bootstrapping: only the very first account may register without an admin token
    if User.query.count() > 0:
        caller = _user_from_request()
        if caller.role != 'ADMIN':
            raise ForbiddenError('Only an admin can register users')

    data = get_json_body()
    require_fields(data, ['name', 'email', 'password', 'role'])
    role = str(data['role']).strip().upper()
    if role not in REGISTRABLE_ROLES:
        raise APIError(f"role must be one of {', '.join(REGISTRABLE_ROLES)}")

    user = create_user(data['name'], data['email'], data['password'], role,
                       department_id=data.get('departmentId'), staff_id=data.get('staffId'))
    db.session.commit()
    logging.info(f"Registered {role} user {user.email}")
    return success(user.to_dict(), 'User registered successfully', 201)


@auth_bp.route('/login', methods=['POST'])
def login():
    data = get_json_body()
    require_fields(data, ['email', 'password'])
    user = User.query.filter_by(email=str(data['email']).strip().lower()).first()
    if user is None or not check_password_hash(user.password_hash, data['password']):
        raise AuthError('Invalid email or password')
    if not user.is_active:
        raise AuthError('Account is inactive')
    return success({'token': create_token(user), 'user': user.to_dict()}, 'Login successful')


@auth_bp.route('/me', methods=['GET'])
@token_required
def me():
    return success(g.current_user.to_dict())


@auth_bp.route('/change-password', methods=['POST'])
@token_required
def change_password():
    data = get_json_body()
    require_fields(data, ['currentPassword', 'newPassword'])
    user = g.current_user
    if not check_password_hash(user.password_hash, data['currentPassword']):
        raise APIError('Current password is incorrect')
    if len(data['newPassword']) < 6:
        raise APIError('New password must be at least 6 characters')
    user.password_hash = generate_password_hash(data['newPassword'])
    db.session.commit()
    return success(message='Password updated successfully')
