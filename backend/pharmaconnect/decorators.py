# Overview: Request authentication decorator and bearer token helpers for API routes.

from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import current_app, g, jsonify, request
from jose import JWTError, jwt

from .extensions import db
from .models import User
from .permissions import Actor, VALID_ROLES

TOKEN_ALGORITHM = "HS256"


def issue_token(user: User, expires_delta: timedelta | None = None) -> str:
    """Sign a {user_id, role} bearer token for a user."""
    if expires_delta is None:
        expires_delta = timedelta(seconds=current_app.config["AUTH_TOKEN_MAX_AGE_SECONDS"])
    claims = {
        "sub": str(user.id),
        "user_id": user.id,
        "role": user.role,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(claims, current_app.config["SECRET_KEY"], algorithm=TOKEN_ALGORITHM)


def verify_token(token: str) -> Actor | None:
    """
    Decode a bearer token into an Actor.

    Returns None for bad signatures, expired tokens, malformed payloads,
    and tokens whose user is gone, inactive, or has changed role.
    """
    try:
        payload = jwt.decode(token, current_app.config["SECRET_KEY"], algorithms=[TOKEN_ALGORITHM])
    except JWTError:
        return None

    user_id = payload.get("user_id")
    role = payload.get("role")
    if not isinstance(user_id, int) or role not in VALID_ROLES:
        return None

    user = db.session.get(User, user_id)
    if user is None or not user.is_active or user.role != role:
        return None
    return Actor(user_id=user.id, role=user.role)


def require_auth(f):
    """
    Require a valid bearer token.

    Sets g.actor to the verified Actor. Ownership checks happen later, inside
    the services, per operation.

    Returns 401 if:
    - No Authorization header
    - Invalid or expired token
    - User missing, deactivated, or role changed since issuance
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        actor = verify_token(token)
        if actor is None:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.actor = actor
        return f(*args, **kwargs)

    return decorated_function
