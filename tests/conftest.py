"""
Shared fixtures.

The app reads its folders from the environment when it is imported, so the
temporary folders are set up before the import below.
"""

import io
import os
import shutil
import tempfile

import pytest
from PIL import Image

_TMP_DIR = tempfile.mkdtemp(prefix="kids-habit-tests-")
os.environ["KIDS_HABIT_DATA_DIR"] = os.path.join(_TMP_DIR, "data")
os.environ["KIDS_HABIT_UPLOAD_DIR"] = os.path.join(_TMP_DIR, "uploads")

from app import app as flask_app, db  # noqa: E402
from models import seed_users  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_TMP_DIR, ignore_errors=True)


@pytest.fixture
def app():
    """Fresh tables, seeded users and an empty upload folder for every test."""
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        seed_users()

    upload_dir = flask_app.config["UPLOAD_FOLDER"]
    for name in os.listdir(upload_dir):
        os.remove(os.path.join(upload_dir, name))

    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def upload_dir(app):
    return app.config["UPLOAD_FOLDER"]


@pytest.fixture
def make_image():
    """Factory returning encoded image bytes."""
    def _make(width=64, height=48, fmt="JPEG", color=(200, 40, 40)):
        buf = io.BytesIO()
        Image.new("RGB", (width, height), color).save(buf, format=fmt)
        return buf.getvalue()
    return _make
