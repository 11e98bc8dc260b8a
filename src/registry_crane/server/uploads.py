"""Blob upload sessions held by the registry server."""

import uuid
from dataclasses import dataclass, field
from typing import Optional

from ..utils.digest import Hasher
from .errors import ServerError, upload_unknown


@dataclass
class UploadSession:
    """Bytes received so far for one upload, hashed as they arrive."""

    id: str
    repo: str
    data: bytearray = field(default_factory=bytearray)
    hasher: Hasher = field(default_factory=Hasher)

    @property
    def offset(self) -> int:
        return len(self.data)

    @property
    def location(self) -> str:
        return f"/v2/{self.repo}/blobs/uploads/{self.id}"

    def range_header(self) -> Optional[str]:
        """``0-<last>`` for the held bytes; None while the session is empty."""
        return f"0-{self.offset - 1}" if self.offset else None

    def append(self, chunk: bytes, content_range: Optional[str] = None) -> None:
        """Add ``chunk`` at the current offset.

        Raises:
            ServerError: 416 when ``content_range`` does not start where the
                session ends or disagrees with the chunk length
        """
        if content_range:
            start, end = _parse_content_range(content_range)
            if start != self.offset or end - start + 1 != len(chunk):
                raise ServerError(
                    416,
                    "BLOB_UPLOAD_INVALID",
                    f"range {content_range} does not continue upload at offset {self.offset}",
                )
        self.data.extend(chunk)
        self.hasher.update(chunk)


def _parse_content_range(value: str) -> tuple[int, int]:
    text = value.strip()
    if text.startswith("bytes"):
        text = text[len("bytes") :].lstrip(" =")
    text = text.split("/", 1)[0]
    try:
        start, end = (int(part) for part in text.split("-", 1))
    except ValueError:
        raise ServerError(416, "BLOB_UPLOAD_INVALID", f"malformed Content-Range {value!r}") from None
    return start, end


class UploadRegistry:
    """Open sessions by id; each session is touched by one client at a time."""

    def __init__(self) -> None:
        self._sessions: dict[str, UploadSession] = {}

    def start(self, repo: str) -> UploadSession:
        session = UploadSession(uuid.uuid4().hex, repo)
        self._sessions[session.id] = session
        return session

    def get(self, repo: str, session_id: str) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None or session.repo != repo:
            raise upload_unknown(session_id)
        return session

    def finish(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
