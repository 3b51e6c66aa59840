"""
Security Module
===============
- Secret key management
- Password policy and bcrypt hashing
- JWT access tokens
- Role-based access control with fine-grained permissions
- Explicit per-request identity context
- Audit trail
"""

import hashlib
import json
import logging
import re
import secrets
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Set, FrozenSet

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import get_settings
from .db import SessionLocal
from .errors import PermissionDeniedError

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

def get_secret_key() -> str:
    """
    Get secret key from settings with validation.
    NEVER use a default secret key in production!
    """
    settings = get_settings()
    secret = settings.secret_key

    if not secret:
        if settings.is_production:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable must be set in production! "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
            )
        warnings.warn(
            "Using development secret key. Set SECRET_KEY for production!",
            RuntimeWarning
        )
        # Deterministic in development so tokens survive hot-reload
        secret = hashlib.sha256(b"erp-core-dev-mode-insecure-key").hexdigest()

    if len(secret) < 32:
        raise RuntimeError("SECRET_KEY must be at least 32 characters")

    return secret


SECRET_KEY = get_secret_key()
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = get_settings().token_expire_minutes


# =============================================================================
# PASSWORD SECURITY
# =============================================================================

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class PasswordPolicy:
    """Password strength validation"""

    @staticmethod
    def validate(password: str) -> tuple[bool, List[str]]:
        """
        Validate password against security policy.

        Returns:
            (is_valid, list_of_errors)
        """
        errors = []

        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        if len(password) > MAX_PASSWORD_LENGTH:
            errors.append(f"Password must not exceed {MAX_PASSWORD_LENGTH} characters")

        if not re.search(r'[A-Za-z]', password):
            errors.append("Password must contain at least one letter")

        if not re.search(r'\d', password):
            errors.append("Password must contain at least one digit")

        return len(errors) == 0, errors


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))


def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt"""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=12)).decode('utf-8')


# =============================================================================
# TOKEN MANAGEMENT
# =============================================================================

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    to_encode = data.copy()

    now = datetime.utcnow()
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode.update({
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16),
        "type": "access"
    })

    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"}
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"}
        )


# =============================================================================
# ROLE-BASED ACCESS CONTROL (RBAC)
# =============================================================================

class Permission:
    """Fine-grained permissions"""

    # Inventory catalogue and stock
    INVENTORY_VIEW = "inventory:view"
    INVENTORY_CREATE = "inventory:create"
    INVENTORY_UPDATE = "inventory:update"
    INVENTORY_DELETE = "inventory:delete"
    INVENTORY_ADJUST = "inventory:adjust"

    # Costing
    COSTING_VIEW = "costing:view"
    COSTING_APPLY = "costing:apply"

    # Production / packaging / assembly orders
    ORDER_VIEW = "order:view"
    ORDER_CREATE = "order:create"
    ORDER_COMPLETE = "order:complete"
    ORDER_CANCEL = "order:cancel"
    ORDER_DELETE = "order:delete"

    # Invoices and returns
    INVOICE_VIEW = "invoice:view"
    INVOICE_CREATE = "invoice:create"
    INVOICE_POST = "invoice:post"
    INVOICE_VOID = "invoice:void"
    INVOICE_DELETE = "invoice:delete"

    # Money
    TREASURY_VIEW = "treasury:view"
    TREASURY_MANAGE = "treasury:manage"
    TREASURY_OPERATE = "treasury:operate"
    PARTY_VIEW = "party:view"
    PARTY_MANAGE = "party:manage"

    # Stocktaking
    STOCKTAKING_VIEW = "stocktaking:view"
    STOCKTAKING_COUNT = "stocktaking:count"
    STOCKTAKING_RECONCILE = "stocktaking:reconcile"

    REPORT_VIEW = "report:view"
    REPORT_EXPORT = "report:export"

    USER_MANAGE = "user:manage"


_VIEW_ALL = {
    Permission.INVENTORY_VIEW, Permission.COSTING_VIEW, Permission.ORDER_VIEW,
    Permission.INVOICE_VIEW, Permission.TREASURY_VIEW, Permission.PARTY_VIEW,
    Permission.STOCKTAKING_VIEW, Permission.REPORT_VIEW,
}

ROLE_PERMISSIONS: dict[str, Set[str]] = {
    "admin": {
        value for name, value in vars(Permission).items() if name.isupper()
    },

    "manager": _VIEW_ALL | {
        Permission.INVENTORY_CREATE, Permission.INVENTORY_UPDATE,
        Permission.INVENTORY_DELETE, Permission.INVENTORY_ADJUST,
        Permission.COSTING_APPLY,
        Permission.ORDER_CREATE, Permission.ORDER_COMPLETE,
        Permission.ORDER_CANCEL, Permission.ORDER_DELETE,
        Permission.INVOICE_CREATE, Permission.INVOICE_POST,
        Permission.INVOICE_VOID, Permission.INVOICE_DELETE,
        Permission.TREASURY_MANAGE, Permission.TREASURY_OPERATE, Permission.PARTY_MANAGE,
        Permission.STOCKTAKING_COUNT, Permission.STOCKTAKING_RECONCILE,
        Permission.REPORT_EXPORT,
    },

    "accountant": _VIEW_ALL | {
        Permission.INVOICE_CREATE, Permission.INVOICE_POST,
        Permission.INVOICE_VOID, Permission.INVOICE_DELETE,
        Permission.TREASURY_MANAGE, Permission.TREASURY_OPERATE, Permission.PARTY_MANAGE,
        Permission.REPORT_EXPORT,
    },

    "inventory_officer": {
        Permission.INVENTORY_VIEW, Permission.INVENTORY_CREATE,
        Permission.INVENTORY_UPDATE, Permission.INVENTORY_ADJUST,
        Permission.COSTING_VIEW, Permission.ORDER_VIEW,
        Permission.STOCKTAKING_VIEW, Permission.STOCKTAKING_COUNT,
        Permission.STOCKTAKING_RECONCILE,
        Permission.REPORT_VIEW,
    },

    "production_officer": {
        Permission.INVENTORY_VIEW, Permission.COSTING_VIEW,
        Permission.ORDER_VIEW, Permission.ORDER_CREATE,
        Permission.ORDER_COMPLETE, Permission.ORDER_DELETE,
        Permission.REPORT_VIEW,
    },

    "viewer": set(_VIEW_ALL),
}


def get_role_permissions(role: str) -> Set[str]:
    """Get permissions for a role"""
    return ROLE_PERMISSIONS.get(role, set())


# =============================================================================
# REQUEST CONTEXT
# =============================================================================

@dataclass(frozen=True)
class RequestContext:
    """
    Identity of the caller, passed explicitly into every service operation.
    """
    user_id: Optional[int]
    username: str
    role: str
    is_active: bool = True
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def for_user(cls, user) -> "RequestContext":
        return cls(
            user_id=user.id,
            username=user.username,
            role=user.role,
            is_active=bool(user.is_active),
            permissions=frozenset(get_role_permissions(user.role)),
        )

    @classmethod
    def system(cls) -> "RequestContext":
        """Context for scripts and maintenance jobs"""
        return cls(
            user_id=None,
            username="system",
            role="admin",
            permissions=frozenset(get_role_permissions("admin")),
        )

    def require(self, *permissions: str) -> None:
        if not self.is_active:
            raise PermissionDeniedError(f"User {self.username} is disabled")
        missing = set(permissions) - set(self.permissions)
        if missing:
            raise PermissionDeniedError(f"Missing permissions: {', '.join(sorted(missing))}")


# =============================================================================
# DEPENDENCY INJECTION
# =============================================================================

def get_db():
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
):
    """
    Get current authenticated user from JWT token.
    """
    from . import models  # Avoid circular import

    payload = decode_token(token)

    username = payload.get("sub")
    if username is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = db.query(models.User).filter(models.User.username == username).first()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled"
        )

    return user


async def get_request_context(current_user=Depends(get_current_user)) -> RequestContext:
    return RequestContext.for_user(current_user)


def require_permission(*required_permissions: str):
    """
    Dependency that checks permissions and hands the route a RequestContext.
    """
    async def permission_checker(ctx: RequestContext = Depends(get_request_context)):
        missing = set(required_permissions) - set(ctx.permissions)
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(sorted(missing))}"
            )
        return ctx

    return permission_checker


# =============================================================================
# AUDIT LOGGING
# =============================================================================

class AuditTrail:
    """Audit rows for sensitive operations, written inside the caller's transaction"""

    @staticmethod
    def record(
        db: Session,
        ctx: RequestContext,
        action: str,
        entity_type: str,
        entity_id: int,
        details: Optional[dict] = None,
    ):
        from .models import AuditLog

        log = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            details=json.dumps(details or {}, default=str),
            user_id=ctx.user_id,
        )
        db.add(log)
        logger.debug("audit %s %s#%s by %s", action, entity_type, entity_id, ctx.username)
        return log
