import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from . import models, schemas
from .models import UserRole
from .security import (
    PasswordPolicy, Permission, RequestContext, AuditTrail,
    create_access_token, get_db, get_password_hash, require_permission, verify_password
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=schemas.Token)
async def login(request: Request, db: Session = Depends(get_db)):
    """Accept either form-encoded (OAuth2) login or JSON {username,password}."""
    ctype = (request.headers.get("content-type") or "").lower()

    if "application/json" in ctype:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Malformed JSON body")
    else:
        body = await request.form()

    username = body.get("username") if hasattr(body, "get") else None
    password = body.get("password") if hasattr(body, "get") else None
    if not username or not password:
        raise HTTPException(status_code=400, detail="Missing username or password")

    user = db.query(models.User).filter(models.User.username == username).first()
    if not user or not verify_password(password, user.password_hash):
        logger.info("Failed login for %s", username)
        raise HTTPException(status_code=400, detail="Incorrect username or password")
    if not user.is_active:
        raise HTTPException(status_code=400, detail="User account is disabled")

    access_token = create_access_token({"sub": user.username, "role": user.role})
    return {"access_token": access_token, "token_type": "bearer", "role": user.role}


@router.post("/register", response_model=schemas.UserOut, status_code=201)
def register(
    user_in: schemas.UserCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.USER_MANAGE))
):
    existing = db.query(models.User).filter(
        (models.User.username == user_in.username) | (models.User.email == user_in.email)
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="User with that username or email already exists")

    ok, problems = PasswordPolicy.validate(user_in.password)
    if not ok:
        raise HTTPException(status_code=400, detail="; ".join(problems))

    user = models.User(
        full_name=user_in.full_name,
        email=user_in.email,
        username=user_in.username,
        password_hash=get_password_hash(user_in.password),
        role=UserRole(user_in.role).value,
    )
    db.add(user)
    db.flush()
    AuditTrail.record(db, ctx, "register", "user", user.id, {"username": user.username, "role": user.role})
    db.commit()
    db.refresh(user)
    return user
