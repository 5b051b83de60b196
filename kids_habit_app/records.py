# records.py
"""Helpers shared by the API, the page and the local store.

Nothing in here touches the database: month keys, input parsing, image
shrinking, upload file names, CSV reading and the month grouping used by
every history view.
"""
import io
import math
import re
import time
import uuid
from datetime import date, datetime

import pandas as pd
from PIL import Image, ImageOps, UnidentifiedImageError

MONTH_RE = re.compile(r'^\d{4}-(0[1-9]|1[0-2])$')
CSV_REQUIRED_COLUMNS = ('date', 'name', 'amount')
# Formats stored as uploaded; anything else is re-encoded as JPEG.
KEPT_FORMATS = {'JPEG': '.jpg', 'PNG': '.png', 'GIF': '.gif', 'WEBP': '.webp'}


class ImageReadError(ValueError):
    """Raised when an uploaded file cannot be decoded as an image."""


def parse_month(value):
    """Return a clean "YYYY-MM" string or raise ValueError."""
    value = (value or '').strip()
    if not MONTH_RE.match(value):
        raise ValueError('month must be YYYY-MM')
    return value


def parse_date(value):
    value = str(value or '').strip()
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        raise ValueError('date must be YYYY-MM-DD') from None


def parse_amount(value):
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValueError('amount must be a number') from None
    if not math.isfinite(amount):
        raise ValueError('amount must be a number')
    return amount


def month_key(value):
    """Year-month prefix of a date (date object or ISO string)."""
    if isinstance(value, (date, datetime)):
        return value.strftime('%Y-%m')
    return str(value)[:7]


def first_of_month(month):
    year, mon = map(int, month.split('-'))
    return date(year, mon, 1)


def format_month(ym):
    year, mon = ym.split('-')
    return f"{year}年{int(mon)}月"


def group_by_month(records):
    """Group record dicts by month key, newest month first.

    Inside a month, records are ordered by date descending with the id as a
    tie breaker, so the result does not depend on the input order.
    """
    groups = {}
    for record in records:
        groups.setdefault(month_key(record['date']), []).append(record)

    result = []
    for month in sorted(groups, reverse=True):
        items = sorted(groups[month], key=lambda r: (str(r['date']), r['id']), reverse=True)
        amounts = [r['amount'] for r in items if r.get('amount') is not None]
        result.append({
            'month': month,
            'label': format_month(month),
            'count': len(items),
            'total': round(sum(amounts), 2),
            'records': items,
        })
    return result


def shrink_image(raw, max_width=1280, quality=78, always_encode=False):
    """Decode an image and shrink it to max_width.

    Returns (bytes, extension). The extension follows the decoded format,
    never the uploaded file name. Narrow images in one of KEPT_FORMATS come
    back untouched unless always_encode is set; everything else is
    re-encoded as JPEG.
    """
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise ImageReadError('could not read image, please retry') from e

    if img.width <= max_width and img.format in KEPT_FORMATS and not always_encode:
        return raw, KEPT_FORMATS[img.format]

    img = ImageOps.exif_transpose(img)
    scale = min(1, max_width / img.width)
    size = (round(img.width * scale), round(img.height * scale))
    if size != img.size:
        img = img.resize(size, Image.LANCZOS)
    if img.mode not in ('RGB', 'L'):
        img = img.convert('RGB')

    out = io.BytesIO()
    img.save(out, format='JPEG', quality=quality)
    return out.getvalue(), '.jpg'


def unique_filename(ext='.jpg'):
    """Time-prefixed random file name."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:10]}{ext}"


def read_purchases_csv(file):
    """Read purchase rows from a CSV file.

    Returns (rows, skipped) where rows are dicts with date, name, amount and
    note. Raises ValueError when the file is unreadable or misses columns.
    """
    try:
        df = pd.read_csv(file)
    except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as e:
        raise ValueError(f"could not read csv: {e}") from e

    df.columns = [str(c).strip().lower() for c in df.columns]
    missing = [c for c in CSV_REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"missing columns: {', '.join(missing)}")

    rows = []
    skipped = 0
    for _, row in df.iterrows():
        try:
            if pd.isna(row['date']) or pd.isna(row['name']):
                raise ValueError('empty field')
            row_date = pd.to_datetime(row['date'], dayfirst=False).date()
            amount = parse_amount(row['amount'])
        except (ValueError, TypeError):
            skipped += 1
            continue

        name = str(row['name']).strip()
        if not name:
            skipped += 1
            continue

        note = None
        if 'note' in df.columns and pd.notna(row['note']):
            note = str(row['note']).strip() or None

        rows.append({'date': row_date, 'name': name, 'amount': amount, 'note': note})
    return rows, skipped
