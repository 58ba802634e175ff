# artifacts.py
import datetime
import hashlib
import logging
from pathlib import Path
from typing import Optional

from .errors import NotFound

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "application/pdf": ".pdf",
    "text/csv": ".csv",
    "application/json": ".json",
}


def sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


class ArtifactStore:
    """
    Content-addressed artifact storage on the local filesystem.

    Files land under <root>/<YYYY-MM-DD>/<sha256><ext>; the returned ref is the
    path relative to root. Storing the same bytes twice is a no-op.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def put(self, content: bytes, content_type: str, when: Optional[datetime.datetime] = None) -> str:
        digest = sha256_bytes(content)
        day = (when or datetime.datetime.now(datetime.timezone.utc)).strftime("%Y-%m-%d")
        datedir = self.root / day
        datedir.mkdir(parents=True, exist_ok=True)
        name = f"{digest}{EXTENSIONS.get(content_type, '')}"
        path = datedir / name
        if not path.exists():
            # write-then-rename so a reader never sees a half-written artifact
            tmp = path.with_suffix(path.suffix + ".part")
            tmp.write_bytes(content)
            tmp.replace(path)
            logger.info("Stored artifact %s (%d bytes)", name, len(content))
        return f"{day}/{name}"

    def resolve(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if self.root.resolve() not in path.parents or not path.is_file():
            raise NotFound("Report artifact is missing.", detail=f"artifact_ref={ref}")
        return path

    def read(self, ref: str) -> bytes:
        return self.resolve(ref).read_bytes()
