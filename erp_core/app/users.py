from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from . import models, schemas
from .db import transaction
from .security import (
    AuditTrail, PasswordPolicy, Permission, RequestContext, get_current_user, get_db,
    get_password_hash, get_request_context, require_permission, verify_password
)

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=schemas.UserOut)
def me_user(current_user: models.User = Depends(get_current_user)):
    return current_user


@router.get("/me/permissions")
def my_permissions(ctx: RequestContext = Depends(get_request_context)):
    """Role and effective permissions of the caller, for UI gating"""
    return {"username": ctx.username, "role": ctx.role, "permissions": sorted(ctx.permissions)}


@router.post("/change-password")
def change_password(
    pw: schemas.ChangePasswordIn,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user)
):
    if not verify_password(pw.old_password, current_user.password_hash):
        raise HTTPException(status_code=400, detail="Old password is incorrect")
    ok, problems = PasswordPolicy.validate(pw.new_password)
    if not ok:
        raise HTTPException(status_code=400, detail="; ".join(problems))

    with transaction(db):
        current_user.password_hash = get_password_hash(pw.new_password)
        AuditTrail.record(
            db, RequestContext.for_user(current_user), "change_password", "user", current_user.id
        )
    return {"status": "ok", "message": "Password updated"}


@router.get("", response_model=List[schemas.UserOut])
def list_users(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.USER_MANAGE))
):
    return db.query(models.User).order_by(models.User.username).all()


@router.patch("/{user_id}/active", response_model=schemas.UserOut)
def set_user_active(
    user_id: int,
    data: schemas.UserActiveIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.USER_MANAGE))
):
    """Enable or disable an account. Disabled users cannot log in or act."""
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if user is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    if user.id == ctx.user_id and not data.is_active:
        raise HTTPException(status_code=400, detail="You cannot disable your own account")

    with transaction(db):
        user.is_active = data.is_active
        AuditTrail.record(db, ctx, "set_active", "user", user.id, {"is_active": data.is_active})
    db.refresh(user)
    return user
