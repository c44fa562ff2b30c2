#!/usr/bin/env python3
"""Create the booking tables in the configured database."""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from salonbook import create_app
from salonbook.extensions import db
from salonbook.memberships import reset_membership_check

def init_database():
    app = create_app()
    with app.app_context():
        db.create_all()
        reset_membership_check()
        print(f"✅ Tables created in {app.config['SQLALCHEMY_DATABASE_URI']}")

if __name__ == "__main__":
    init_database()
