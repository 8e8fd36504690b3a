"""Password hashing and the staff login session."""
from typing import Any, Dict, Optional

import bcrypt
from fastapi import HTTPException, Request

SESSION_USER_KEY = "user"


def hash_password(password: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


def login_user(request: Request, user: Dict[str, Any]):
    request.session[SESSION_USER_KEY] = {"id": user["id"], "email": user["email"]}


def logout_user(request: Request):
    request.session.pop(SESSION_USER_KEY, None)


def current_user(request: Request) -> Optional[Dict[str, Any]]:
    return request.session.get(SESSION_USER_KEY)


def login_required(request: Request) -> Dict[str, Any]:
    """Page dependency: bounce anonymous visitors to the login form."""
    user = current_user(request)
    if not user:
        raise HTTPException(status_code=303, headers={"Location": "/login"})
    return user


def api_login_required(request: Request) -> Dict[str, Any]:
    user = current_user(request)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user
