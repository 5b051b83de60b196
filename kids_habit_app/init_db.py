# init_db.py
from app import app, db
from models import User, seed_users

# Users are hardcoded in models.USERS. Edit them there and run this again
# to rename existing users.

with app.app_context():
    # This creates the tables if they don't exist
    db.create_all()
    seed_users()

    for user in User.query.all():
        print(f"  {user.id}: {user.name}")
    print(f"Database ready at {app.config['SQLALCHEMY_DATABASE_URI']}")
