# models.py
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

# Initialize the database
db = SQLAlchemy()

# The kids are fixed. Change names here, then run init_db.py again.
USERS = [
    {'id': 'xiaoyuan', 'name': '小元'},
    {'id': 'xiaoman', 'name': '小满'},
]

class User(db.Model):
    id = db.Column(db.String(40), primary_key=True)
    name = db.Column(db.String(80), nullable=False)

    # Relationship to records
    records = db.relationship('ToyRecord', backref='user', lazy=True)

    def to_dict(self):
        return {'id': self.id, 'name': self.name}

class ToyRecord(db.Model):
    __tablename__ = 'toy_record'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.String(40), db.ForeignKey('user.id'), nullable=False, index=True)
    month = db.Column(db.String(7), nullable=False) # "YYYY-MM", always matches date
    date = db.Column(db.Date, nullable=False)
    name = db.Column(db.String(200))
    amount = db.Column(db.Float)
    note = db.Column(db.String(500))
    image_path = db.Column(db.String(300)) # "/uploads/<file>" or empty for plain purchases
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'month': self.month,
            'date': self.date.isoformat(),
            'name': self.name,
            'amount': self.amount,
            'note': self.note,
            'imagePath': self.image_path,
            'createdAt': self.created_at.isoformat() + 'Z', # stored as naive UTC
        }

def seed_users():
    """Insert or rename the fixed users. Safe to call on every start."""
    created = 0
    for entry in USERS:
        user = db.session.get(User, entry['id'])
        if not user:
            user = User(id=entry['id'])
            db.session.add(user)
            created += 1
        user.name = entry['name']
    db.session.commit()
    return created
