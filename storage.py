import logging
import os
import re
from datetime import datetime

from flask import current_app
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

URL_PREFIX = '/uploads'


def user_folder(email: str) -> str:
    return re.sub(r'[^a-zA-Z0-9]', '_', email)


def _disk_path(url: str) -> str:
    relative = url[len(URL_PREFIX):] if url.startswith(URL_PREFIX) else url
    root = os.path.abspath(current_app.config['UPLOAD_FOLDER'])
    path = os.path.abspath(os.path.join(root, relative.lstrip('/')))
    if os.path.commonpath([root, path]) != root:
        raise ValueError(f'Path escapes the upload folder: {url}')
    return path


def save_upload(file, owner_email: str) -> str:
    """Store an uploaded file under the owner's folder and return its public URL."""
    name = secure_filename(file.filename or '') or 'upload'
    stored_name = f"{datetime.now().strftime('%Y%m%d%H%M%S%f')}_{name}"
    folder = user_folder(owner_email)
    directory = os.path.join(current_app.config['UPLOAD_FOLDER'], folder)
    os.makedirs(directory, exist_ok=True)
    file.save(os.path.join(directory, stored_name))
    url = f'{URL_PREFIX}/{folder}/{stored_name}'
    logger.info('Stored upload %s', url)
    return url


def remove_file(url) -> bool:
    """Best-effort removal of a stored file. Failures are logged, never raised."""
    if not url:
        return False
    try:
        os.remove(_disk_path(url))
    except (OSError, ValueError):
        logger.warning('File not found or could not be deleted: %s', url)
        return False
    return True
