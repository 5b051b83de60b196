# app.py
import logging
import os
from datetime import datetime

import click
from flask import Flask, render_template, request, redirect, url_for, flash, jsonify, send_from_directory, session
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import RequestEntityTooLarge

from models import db, User, ToyRecord, USERS, seed_users
from records import (first_of_month, group_by_month, parse_amount, parse_date,
                     parse_month, read_purchases_csv, shrink_image, unique_filename)
from local_store import APP_KEY, LocalStore, from_data_url

# ---------------- Configuration ----------------
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger('kids-habit')

DATA_DIR = os.path.abspath(os.environ.get('KIDS_HABIT_DATA_DIR', 'data'))
UPLOAD_DIR = os.path.abspath(os.environ.get('KIDS_HABIT_UPLOAD_DIR', 'uploads'))
os.makedirs(DATA_DIR, exist_ok=True)
os.makedirs(UPLOAD_DIR, exist_ok=True)

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'kids-habit-dev') # Needed for flash and the active user
app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///' + os.path.join(DATA_DIR, 'kids-habbit.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['UPLOAD_FOLDER'] = UPLOAD_DIR
app.config['MAX_CONTENT_LENGTH'] = 50 * 1024 * 1024
app.config['MAX_IMAGE_WIDTH'] = 1280
app.config['JPEG_QUALITY'] = 78
app.config['MAX_PHOTOS_PER_UPLOAD'] = 20

# Initialize extensions
db.init_app(app)
CORS(app)

with app.app_context():
    db.create_all()
    seed_users()

# --- HELPERS ---

def api_error(message, status):
    return jsonify({'error': message}), status

def shrink(raw):
    return shrink_image(raw, app.config['MAX_IMAGE_WIDTH'], app.config['JPEG_QUALITY'])

def write_upload(data, filename):
    """Write bytes into the upload folder, return the public path."""
    with open(os.path.join(app.config['UPLOAD_FOLDER'], filename), 'wb') as out:
        out.write(data)
    return f"/uploads/{filename}"

def remove_uploads(paths):
    for public_path in paths:
        full = os.path.join(app.config['UPLOAD_FOLDER'], os.path.basename(public_path))
        if os.path.exists(full):
            os.remove(full)

def incoming_photos():
    files = request.files.getlist('photos') + request.files.getlist('photos[]')
    return [f for f in files if f and f.filename]

def save_photos(user_id, month, files):
    """
    Store a batch of photos for one month. Every image is decoded first, so
    a bad file rejects the batch before anything is written. All rows of the
    batch share one created_at.
    """
    if len(files) > app.config['MAX_PHOTOS_PER_UPLOAD']:
        raise ValueError(f"at most {app.config['MAX_PHOTOS_PER_UPLOAD']} photos per upload")

    prepared = []
    for f in files:
        data, ext = shrink(f.read())
        prepared.append((data, unique_filename(ext)))

    created_at = datetime.utcnow()
    day = first_of_month(month)
    written = []
    try:
        for data, filename in prepared:
            written.append(write_upload(data, filename))
            db.session.add(ToyRecord(user_id=user_id, month=month, date=day,
                                     image_path=written[-1], created_at=created_at))
        db.session.commit()
    except (SQLAlchemyError, OSError):
        db.session.rollback()
        remove_uploads(written)
        raise

    logger.info("Stored %d photos for %s in %s", len(prepared), user_id, month)
    return len(prepared)

def clean_purchase(data):
    """Validate name/amount/date/note from a form or JSON body."""
    name = str(data.get('name') or '').strip()
    raw_amount = data.get('amount')
    raw_date = str(data.get('date') or '').strip()
    if not name or raw_amount in (None, '') or not raw_date:
        raise ValueError('name, amount and date required')

    note = str(data.get('note') or '').strip() or None
    return {'name': name, 'amount': parse_amount(raw_amount), 'date': parse_date(raw_date), 'note': note}

def add_purchase(user_id, purchase, photo=None):
    image_path = None
    if photo and photo.filename:
        data, ext = shrink(photo.read())
        image_path = write_upload(data, unique_filename(ext))

    record = ToyRecord(
        user_id=user_id,
        month=purchase['date'].strftime('%Y-%m'),
        date=purchase['date'],
        name=purchase['name'],
        amount=purchase['amount'],
        note=purchase['note'],
        image_path=image_path,
        created_at=datetime.utcnow()
    )
    db.session.add(record)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        if image_path:
            remove_uploads([image_path])
        raise
    logger.info("Added purchase %r for %s", record.name, user_id)
    return record

def fixed_users():
    """Users in the order they are listed in USERS."""
    return [u for u in (db.session.get(User, entry['id']) for entry in USERS) if u]

def user_records(user_id):
    records = ToyRecord.query.filter_by(user_id=user_id).order_by(ToyRecord.id.desc()).all()
    return [r.to_dict() for r in records]

def import_local_store(store):
    """Copy every record of a LocalStore into the database. Returns (count, skipped)."""
    created_at = datetime.utcnow()
    count = 0
    skipped = 0
    written = []
    try:
        for user_id, entries in store.records_by_user.items():
            if not db.session.get(User, user_id):
                logger.warning("Skipping %d records of unknown user %s", len(entries), user_id)
                skipped += len(entries)
                continue

            for entry in entries:
                if not isinstance(entry, dict):
                    logger.warning("Skipping malformed local record %r", entry)
                    skipped += 1
                    continue
                try:
                    day = parse_date(entry.get('date'))
                    amount = entry.get('amount')
                    amount = parse_amount(amount) if amount not in (None, '') else None
                    photo = from_data_url(entry['photoDataUrl']) if entry.get('photoDataUrl') else None
                except ValueError as e:
                    logger.warning("Skipping local record %s: %s", entry.get('id'), e)
                    skipped += 1
                    continue

                image_path = None
                if photo:
                    image_path = write_upload(photo[0], unique_filename(photo[1]))
                    written.append(image_path)

                db.session.add(ToyRecord(
                    user_id=user_id,
                    month=day.strftime('%Y-%m'),
                    date=day,
                    name=entry.get('name') or None,
                    amount=amount,
                    note=entry.get('note') or None,
                    image_path=image_path,
                    created_at=created_at
                ))
                count += 1
        db.session.commit()
    except (SQLAlchemyError, OSError):
        db.session.rollback()
        remove_uploads(written)
        raise
    return count, skipped

# --- API ROUTES ---

@app.route('/api/users')
def list_users():
    return jsonify([u.to_dict() for u in fixed_users()])

@app.route('/api/records/<user_id>', methods=['GET'])
def get_records(user_id):
    if not db.session.get(User, user_id):
        return api_error('unknown user', 404)
    try:
        return jsonify(user_records(user_id))
    except SQLAlchemyError as e:
        logger.exception("Reading records failed")
        return api_error(str(e), 500)

@app.route('/api/records/<user_id>/months', methods=['GET'])
def get_records_by_month(user_id):
    if not db.session.get(User, user_id):
        return api_error('unknown user', 404)
    try:
        return jsonify(group_by_month(user_records(user_id)))
    except SQLAlchemyError as e:
        logger.exception("Reading records failed")
        return api_error(str(e), 500)

@app.route('/api/records/<user_id>', methods=['POST'])
def upload_photos(user_id):
    if not db.session.get(User, user_id):
        return api_error('unknown user', 404)

    month = request.form.get('month')
    if not month:
        return api_error('month required', 400)
    files = incoming_photos()
    if not files:
        return api_error('photos required', 400)

    try:
        count = save_photos(user_id, parse_month(month), files)
    except ValueError as e:  # includes ImageReadError
        return api_error(str(e), 400)
    except (SQLAlchemyError, OSError) as e:
        logger.exception("Saving photos failed")
        return api_error(str(e), 500)
    return jsonify({'ok': True, 'count': count})

@app.route('/api/records/<user_id>/purchases', methods=['POST'])
def create_purchase(user_id):
    if not db.session.get(User, user_id):
        return api_error('unknown user', 404)

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form
    try:
        record = add_purchase(user_id, clean_purchase(data), request.files.get('photo'))
    except ValueError as e:
        return api_error(str(e), 400)
    except (SQLAlchemyError, OSError) as e:
        logger.exception("Saving purchase failed")
        return api_error(str(e), 500)
    return jsonify(record.to_dict()), 201

@app.route('/api/records/<user_id>/import', methods=['POST'])
def import_csv(user_id):
    if not db.session.get(User, user_id):
        return api_error('unknown user', 404)
    file = request.files.get('file')
    if not file or not file.filename:
        return api_error('file required', 400)

    try:
        rows, skipped = read_purchases_csv(file)
    except ValueError as e:
        return api_error(str(e), 400)

    created_at = datetime.utcnow()
    for row in rows:
        db.session.add(ToyRecord(
            user_id=user_id,
            month=row['date'].strftime('%Y-%m'),
            date=row['date'],
            name=row['name'],
            amount=row['amount'],
            note=row['note'],
            created_at=created_at
        ))
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("CSV import failed")
        return api_error(str(e), 500)

    logger.info("Imported %d purchases for %s, skipped %d rows", len(rows), user_id, skipped)
    return jsonify({'ok': True, 'count': len(rows), 'skipped': skipped})

@app.route('/uploads/<path:filename>')
def uploaded_file(filename):
    return send_from_directory(app.config['UPLOAD_FOLDER'], filename)

@app.errorhandler(RequestEntityTooLarge)
def too_large(e):
    return api_error('upload too large', 413)

@app.errorhandler(SQLAlchemyError)
def database_error(e):
    db.session.rollback()
    logger.error("Database error: %s", e, exc_info=e)
    return api_error(str(e), 500)

# --- PAGE ROUTES ---

def active_user_id():
    """?user= switches the active user and remembers it in the session."""
    known = {u['id'] for u in USERS}
    wanted = request.args.get('user')
    if wanted in known:
        session['active_user_id'] = wanted
    current = session.get('active_user_id')
    return current if current in known else USERS[0]['id']

@app.route('/')
def index():
    user_id = active_user_id()
    active_user = db.session.get(User, user_id)
    selected_month = request.args.get('month') or datetime.now().strftime('%Y-%m')

    return render_template('index.html',
                           users=fixed_users(),
                           active_user=active_user,
                           groups=group_by_month(user_records(user_id)),
                           selected_month=selected_month,
                           today=datetime.now().strftime('%Y-%m-%d'))

@app.route('/upload', methods=['POST'])
def upload_page():
    user_id = active_user_id()
    month = request.form.get('month')
    files = incoming_photos()

    if not month:
        flash('Please pick a month first.')
    elif not files:
        flash('Please choose at least one photo.')
    else:
        try:
            count = save_photos(user_id, parse_month(month), files)
            flash(f"Saved {count} photos.")
        except ValueError as e:
            flash(f"Upload failed: {e}")
        except (SQLAlchemyError, OSError):
            logger.exception("Saving photos failed")
            flash('Upload failed, please try again.')

    return redirect(url_for('index', month=month or None))

@app.route('/add_purchase', methods=['POST'])
def add_purchase_page():
    user_id = active_user_id()
    try:
        record = add_purchase(user_id, clean_purchase(request.form), request.files.get('photo'))
        flash(f"Added {record.name}.")
    except ValueError as e:
        flash(f"Not saved: {e}")
    except (SQLAlchemyError, OSError):
        logger.exception("Saving purchase failed")
        flash('Saving failed, please try again.')
    return redirect(url_for('index'))

# --- CLI ---

@app.cli.command('import-local')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--key', default=APP_KEY, show_default=True, help='Storage key the blob is saved under.')
def import_local_command(path, key):
    """Import records saved by the offline version of the app."""
    store = LocalStore(path, key=key).load()
    count, skipped = import_local_store(store)
    click.echo(f"Imported {count} records from {path}. Skipped {skipped}.")

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8787))
    logger.info("API listening on http://localhost:%d", port)
    app.run(port=port, debug=True)
