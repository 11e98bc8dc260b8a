"""Error responses of the registry server."""

import json
from typing import Any, Optional

from aiohttp import web


class ServerError(Exception):
    """A distribution-spec error, rendered as ``{"errors": [...]}``."""

    def __init__(
        self, status: int, code: str, message: str, detail: Any = None, headers: Optional[dict[str, str]] = None
    ) -> None:
        super().__init__(f"{code} {message}")
        self.status = status
        self.code = code
        self.message = message
        self.detail = detail
        self.headers = headers or {}

    def to_response(self) -> web.Response:
        entry: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail is not None:
            entry["detail"] = self.detail
        return web.Response(
            status=self.status,
            body=json.dumps({"errors": [entry]}).encode(),
            content_type="application/json",
            headers=self.headers,
        )


def blob_unknown(digest: str) -> ServerError:
    return ServerError(404, "BLOB_UNKNOWN", "blob unknown to registry", {"digest": digest})


def manifest_unknown(reference: str) -> ServerError:
    return ServerError(404, "MANIFEST_UNKNOWN", "manifest unknown", {"reference": reference})


def name_unknown(repo: str) -> ServerError:
    return ServerError(404, "NAME_UNKNOWN", "repository name not known to registry", {"name": repo})


def upload_unknown(session_id: str) -> ServerError:
    return ServerError(404, "BLOB_UPLOAD_UNKNOWN", "blob upload unknown to registry", {"session": session_id})


def digest_invalid(message: str) -> ServerError:
    return ServerError(400, "DIGEST_INVALID", message)


def unsupported(message: str) -> ServerError:
    return ServerError(405, "UNSUPPORTED", message)


def unauthorized(realm: str) -> ServerError:
    return ServerError(
        401, "UNAUTHORIZED", "authentication required", headers={"WWW-Authenticate": f'Basic realm="{realm}"'}
    )
