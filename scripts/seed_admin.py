#!/usr/bin/env python3
"""
Main Admin Seed Script
Creates the main administrator for the VBMS admin console.

Usage:
    python -m scripts.seed_admin <email> <name> <password>

Example:
    python -m scripts.seed_admin owner@vbms.app "Store Owner" securepassword123
"""
import sys
import os
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from app.database import SessionLocal, engine, Base
from app.models.db_models import UserDB, UserRole, UserStatus, ADMIN_PERMISSIONS
from app.auth import hash_password


def create_main_admin(email: str, name: str, password: str) -> bool:
    """Create (or promote) the main administrator."""
    # Ensure tables exist
    Base.metadata.create_all(bind=engine)

    email = email.strip().lower()
    db: Session = SessionLocal()
    try:
        existing = db.query(UserDB).filter(UserDB.email == email).first()

        if existing:
            if existing.role == UserRole.MAIN_ADMIN:
                print(f"User '{email}' is already the main admin.")
                return False
            existing.role = UserRole.MAIN_ADMIN
            existing.admin_permissions = {flag: True for flag in ADMIN_PERMISSIONS}
            db.commit()
            print(f"Promoted existing user '{email}' to main_admin.")
            return True

        admin_user = UserDB(
            id=str(uuid4()),
            name=name,
            email=email,
            password_hash=hash_password(password),
            role=UserRole.MAIN_ADMIN,
            status=UserStatus.ACTIVE,
            position="Owner",
            admin_permissions={flag: True for flag in ADMIN_PERMISSIONS},
            login_history=[],
        )

        db.add(admin_user)
        db.commit()

        print("Main admin created successfully!")
        print(f"  Email: {email}")
        print(f"  Name: {name}")
        print("  Role: main_admin")
        return True

    except Exception as e:
        print(f"Error creating main admin: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) != 4:
        print(__doc__)
        sys.exit(1)

    email = sys.argv[1]
    name = sys.argv[2]
    password = sys.argv[3]

    # Basic validation
    if len(password) < 8:
        print("Error: Password must be at least 8 characters.")
        sys.exit(1)

    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    success = create_main_admin(email, name, password)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
