import os
from typing import Dict
from urllib.parse import urljoin
from uuid import uuid4

from werkzeug.utils import secure_filename

from primemart.errors import DependencyError


class LocalBlobStore:
    """Stores uploaded documents in a folder served under ``/uploads``.

    The deletion handle is the stored file name.
    """

    def __init__(self, folder: str, public_base_url: str, logger):
        self.folder = folder
        self.public_base_url = public_base_url
        self.logger = logger
        os.makedirs(self.folder, exist_ok=True)

    def build_url(self, handle: str) -> str:
        if not handle:
            return ""
        base_url = self.public_base_url.rstrip("/") + "/"
        return urljoin(base_url, f"uploads/{handle}")

    def upload(self, content: bytes, filename: str) -> Dict[str, str]:
        original_filename = secure_filename(filename or "") or "document.pdf"
        stem, extension = os.path.splitext(original_filename)
        handle = f"{stem}-{uuid4().hex[:12]}{extension.lower() or '.pdf'}"
        destination = os.path.join(self.folder, handle)

        try:
            with open(destination, "wb") as target:
                target.write(content)
        except OSError as exc:
            self.logger.error("Unable to store %s: %s", handle, exc)
            raise DependencyError("We could not store the invoice document.") from exc

        return {"url": self.build_url(handle), "handle": handle}

    def delete(self, handle: str):
        if not handle:
            return

        target = os.path.join(self.folder, secure_filename(str(handle)))
        try:
            os.remove(target)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise DependencyError(f"Unable to delete stored document {handle}.") from exc
