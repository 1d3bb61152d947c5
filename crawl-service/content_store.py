"""Raw page content storage. Pages keep only an opaque reference to it."""

import logging
import re
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

_SAFE_SEGMENT = re.compile(r"[^a-zA-Z0-9._-]")


class ContentNotFoundError(FileNotFoundError):
    """Raised when a raw_content_ref points at nothing."""


class LocalContentStore:
    """Stores raw HTML on disk as {root}/{domain}/{url_hash}.html."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def put(self, domain: str, url_hash: str, body: str) -> str:
        ref = f"{_SAFE_SEGMENT.sub('_', domain)}/{url_hash}.html"
        path = self.root / ref
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")
        return ref

    def get(self, ref: str) -> str:
        path = (self.root / ref).resolve()
        if self.root.resolve() not in path.parents or not path.is_file():
            raise ContentNotFoundError(f"No stored content for ref: {ref}")
        return path.read_text(encoding="utf-8")

    def exists(self, ref: str) -> bool:
        try:
            self.get(ref)
        except ContentNotFoundError:
            return False
        return True
