import logging
import os
import re
import uuid
from io import BytesIO

from pypdf import PdfReader
from pypdf.errors import PdfReadError
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

IMAGE_MIMETYPES = {'image/jpeg', 'image/jpg', 'image/png', 'image/gif'}

ALLOWED_MIMETYPES = IMAGE_MIMETYPES | {
    'application/pdf',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'text/plain',
    'application/vnd.ms-powerpoint',
    'application/vnd.openxmlformats-officedocument.presentationml.presentation',
    'video/mp4',
    'video/avi',
    'video/quicktime'
}

INVALID_TYPE_MESSAGE = ("Invalid file type. Only images, PDFs, Word documents, text files, "
                        "PowerPoint presentations, and videos are allowed.")


class StorageError(Exception):
    pass


def is_allowed_file(file_storage, allowed=ALLOWED_MIMETYPES):
    return file_storage is not None and file_storage.mimetype in allowed


def save_upload(file_storage, folder):
    """Write an uploaded file under ``folder`` with a unique name.

    Returns the metadata stored alongside materials, assignment attachments and
    submission attachments. ``storageId`` is the stored file name.
    """
    original_name = secure_filename(file_storage.filename or '') or 'upload'
    storage_id = f"{uuid.uuid4().hex}_{original_name}"
    os.makedirs(folder, exist_ok=True)
    path = os.path.join(folder, storage_id)
    try:
        file_storage.save(path)
    except OSError as e:
        raise StorageError(f"Failed to store {original_name}") from e

    return {
        "fileName": file_storage.filename or original_name,
        "fileUrl": f"/api/files/{storage_id}",
        "fileType": file_storage.mimetype,
        "fileSize": os.path.getsize(path),
        "storageId": storage_id
    }


def delete_stored_file(folder, storage_id):
    """Best-effort removal; returns True when a file was deleted."""
    if not storage_id:
        return False
    path = os.path.join(folder, secure_filename(storage_id))
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        logger.warning("Stored file %s already missing", storage_id)
    except OSError:
        logger.warning("Failed to delete stored file %s", storage_id, exc_info=True)
    return False


def delete_attachments(folder, attachments):
    for attachment in attachments or []:
        delete_stored_file(folder, attachment.get("storageId"))


def read_stored_text(folder, storage_id, limit=None):
    path = os.path.join(folder, secure_filename(storage_id))
    with open(path, 'r', encoding='utf-8', errors='ignore') as handle:
        return handle.read(limit) if limit else handle.read()


def extract_pdf_text(data):
    """Extract the text of a PDF given as bytes or a readable stream."""
    if hasattr(data, 'read'):
        data = data.read()
    try:
        reader = PdfReader(BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except PdfReadError as e:
        raise StorageError("Failed to extract text from PDF") from e

    text = "\n\n".join(re.sub(r'[^\S\r\n]+', ' ', page).strip() for page in pages)
    return text.strip()
