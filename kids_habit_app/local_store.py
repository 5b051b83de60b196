# local_store.py
"""Single-blob record store used by the offline version of the app.

Everything (active user and records per user) is kept as one JSON document
under one key, the same shape the browser version wrote to local storage.
The server reads these files through `flask import-local`.
"""
import base64
import json
import logging
import os
import uuid

from records import shrink_image

logger = logging.getLogger('kids-habit')

APP_KEY = 'kids-habbit:v1'
DEFAULT_QUOTA = 5 * 1024 * 1024


class StorageFullError(Exception):
    """The serialized store does not fit in the storage quota."""


def to_data_url(raw, mime='image/jpeg'):
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


def from_data_url(url):
    """Return (bytes, extension) for a base64 data URL."""
    header, _, payload = url.partition(',')
    if not header.startswith('data:') or ';base64' not in header:
        raise ValueError('not a base64 data url')
    mime = header[5:].split(';')[0]
    ext = {'image/png': '.png', 'image/gif': '.gif', 'image/webp': '.webp'}.get(mime, '.jpg')
    return base64.b64decode(payload), ext


class LocalStore:
    def __init__(self, path, key=APP_KEY, quota_bytes=DEFAULT_QUOTA,
                 max_width=1280, quality=78):
        self.path = path
        self.key = key
        self.quota_bytes = quota_bytes
        self.max_width = max_width
        self.quality = quality
        self.active_user_id = None
        self.records_by_user = {}

    def _read_all(self):
        if not os.path.exists(self.path):
            return {}
        with open(self.path, encoding='utf-8') as f:
            return json.load(f)

    def load(self):
        """Load the blob stored under our key. A missing key means empty."""
        raw = self._read_all().get(self.key)
        if raw:
            parsed = json.loads(raw)
            self.active_user_id = parsed.get('activeUserId') or self.active_user_id
            self.records_by_user = parsed.get('recordsByUser') or {}
        return self

    def save(self):
        blob = json.dumps({
            'activeUserId': self.active_user_id,
            'recordsByUser': self.records_by_user,
        }, ensure_ascii=False)

        entries = self._read_all()
        entries[self.key] = blob
        payload = json.dumps(entries, ensure_ascii=False)
        if len(payload.encode('utf-8')) > self.quota_bytes:
            logger.error("Local store %s is full (%d bytes allowed)", self.path, self.quota_bytes)
            raise StorageFullError('storage is full: delete some older photos first')

        tmp_path = self.path + '.tmp'
        with open(tmp_path, 'w', encoding='utf-8') as f:
            f.write(payload)
        os.replace(tmp_path, self.path)

    def records(self, user_id):
        return self.records_by_user.get(user_id, [])

    def add_photos(self, user_id, month, files):
        """Shrink each image and put the new records in front.

        files is a list of raw image bytes. If any image fails to decode,
        nothing is added.
        """
        new_records = []
        for raw in files:
            data, _ = shrink_image(raw, self.max_width, self.quality, always_encode=True)
            new_records.append({
                'id': str(uuid.uuid4()),
                'date': f"{month}-01",
                'photoDataUrl': to_data_url(data),
            })

        previous = self.records_by_user.get(user_id, [])
        self.records_by_user[user_id] = new_records + previous
        try:
            self.save()
        except StorageFullError:
            self.records_by_user[user_id] = previous
            raise
        return new_records
