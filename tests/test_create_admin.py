"""Admin bootstrap script."""

import pytest

from erp_core.app.models import AuditLog, User
from erp_core.app.security import verify_password
from scripts.create_admin import bootstrap_admin


def test_creates_admin_with_audit_row(db_session):
    outcome = bootstrap_admin(db_session, "root", "root@example.com", "Secret123")

    user = db_session.query(User).filter(User.username == "root").one()
    assert outcome == "created"
    assert user.role == "admin"
    assert verify_password("Secret123", user.password_hash)
    assert db_session.query(AuditLog).filter(AuditLog.entity_type == "user").count() == 1


def test_existing_user_is_left_alone(db_session):
    bootstrap_admin(db_session, "root", "root@example.com", "Secret123")
    assert bootstrap_admin(db_session, "root", "root@example.com", "Other1234") == "exists"

    user = db_session.query(User).filter(User.username == "root").one()
    assert verify_password("Secret123", user.password_hash)


def test_reset_sets_new_password_and_enables(db_session):
    bootstrap_admin(db_session, "root", "root@example.com", "Secret123")
    user = db_session.query(User).filter(User.username == "root").one()
    user.is_active = False
    db_session.commit()

    assert bootstrap_admin(db_session, "root", None, "Other1234", reset=True) == "reset"

    db_session.refresh(user)
    assert user.is_active
    assert verify_password("Other1234", user.password_hash)


def test_weak_password_is_rejected(db_session):
    with pytest.raises(ValueError):
        bootstrap_admin(db_session, "root", "root@example.com", "short")


def test_unknown_role_is_rejected(db_session):
    with pytest.raises(ValueError):
        bootstrap_admin(db_session, "root", "root@example.com", "Secret123", role="superuser")
