from __future__ import annotations

import os
from getpass import getpass

from filevault import create_app
from filevault.bootstrap import bootstrap_defaults
from filevault.extensions import db
from filevault.models import User, UserRole, UserStatus


def main() -> None:
    app = create_app()

    with app.app_context():
        db.create_all()
        bootstrap_defaults(commit=True)

        username = os.getenv("ADMIN_USERNAME", "admin")
        password = os.getenv("ADMIN_PASSWORD")
        if not password:
            password = getpass("Admin password: ")

        user = User.query.filter_by(username=username).one_or_none()
        created = False
        if user is None:
            user = User(username=username)
            created = True

        user.set_password(password)
        user.role = UserRole.ADMIN.value
        user.status = UserStatus.ACTIVE.value

        db.session.add(user)
        db.session.commit()

        print(f"{'Created' if created else 'Updated'} admin user: {username}")


if __name__ == "__main__":
    main()
