"""Bootstrap or recover an administrator account.

Usage:
  python scripts/create_admin.py --username admin --email admin@example.com --password secret123
  python scripts/create_admin.py --username admin --password newsecret1 --reset
Or provide via env: ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD
"""
import os
import argparse
import logging
from getpass import getpass

from sqlalchemy.orm import Session

from erp_core.app.db import SessionLocal, create_db_and_tables, transaction
from erp_core.app import models
from erp_core.app.security import AuditTrail, PasswordPolicy, RequestContext, get_password_hash

logger = logging.getLogger(__name__)


def bootstrap_admin(
    db: Session,
    username: str,
    email: str,
    password: str,
    full_name: str = 'Administrator',
    role: str = models.UserRole.ADMIN.value,
    reset: bool = False,
) -> str:
    """
    Create the account, or with `reset` set a new password on an existing one
    and re-enable it. Returns "created", "reset" or "exists".
    """
    ok, problems = PasswordPolicy.validate(password)
    if not ok:
        raise ValueError('; '.join(problems))
    role = models.UserRole(role).value

    ctx = RequestContext.system()
    with transaction(db):
        existing = db.query(models.User).filter(models.User.username == username).first()
        if existing and not reset:
            return 'exists'
        if existing:
            existing.password_hash = get_password_hash(password)
            existing.is_active = True
            AuditTrail.record(db, ctx, 'reset_password', 'user', existing.id)
            return 'reset'

        user = models.User(
            full_name=full_name,
            email=email,
            username=username,
            password_hash=get_password_hash(password),
            role=role,
        )
        db.add(user)
        db.flush()
        AuditTrail.record(db, ctx, 'create', 'user', user.id, {'role': role, 'source': 'bootstrap'})
    return 'created'


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument('--username')
    parser.add_argument('--email')
    parser.add_argument('--password')
    parser.add_argument('--full-name', default='Administrator')
    parser.add_argument('--role', default=models.UserRole.ADMIN.value,
                        choices=[r.value for r in models.UserRole])
    parser.add_argument('--reset', action='store_true', help='Set a new password on an existing user')
    args = parser.parse_args()

    username = args.username or os.getenv('ADMIN_USERNAME')
    email = args.email or os.getenv('ADMIN_EMAIL')
    password = args.password or os.getenv('ADMIN_PASSWORD')
    if not username:
        username = input('Username: ').strip()
    if not email and not args.reset:
        email = input('Email: ').strip()
    if not password:
        password = getpass('Password: ')

    create_db_and_tables()
    db = SessionLocal()
    try:
        outcome = bootstrap_admin(
            db, username, email, password,
            full_name=args.full_name, role=args.role, reset=args.reset,
        )
    except ValueError as e:
        raise SystemExit(str(e))
    finally:
        db.close()

    if outcome == 'exists':
        print('User already exists:', username, '(use --reset to set a new password)')
    else:
        print(f'User {username} {outcome}')


if __name__ == '__main__':
    main()
