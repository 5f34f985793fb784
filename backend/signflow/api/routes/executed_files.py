from __future__ import annotations

import re
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from sqlmodel import Session

from signflow.api.deps import get_db, get_signing_config, get_storage_backend
from signflow.core.config import SigningConfig
from signflow.core.errors import SigningError
from signflow.models.document import StoredFile
from signflow.services.storage import ArtifactNotFoundError, StorageBackend
from signflow.utils.security import AccessTokenExpired, decode_executed_file_token

router = APIRouter(prefix="/esign/executed", tags=["executed-files"])

_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiable(ValueError):
    pass


def parse_byte_range(header: str | None, size: int) -> tuple[int, int] | None:
    """Inclusive (start, end) for a single ``bytes=`` range, or ``None`` to send the full body."""
    if not header:
        return None
    match = _RANGE_PATTERN.match(header.strip())
    if not match:
        return None
    raw_start, raw_end = match.groups()
    if not raw_start and not raw_end:
        return None
    if not raw_start:
        suffix = int(raw_end)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(header)
        return max(size - suffix, 0), size - 1
    start = int(raw_start)
    end = int(raw_end) if raw_end else size - 1
    if start >= size or end < start:
        raise RangeNotSatisfiable(header)
    return start, min(end, size - 1)


@router.get("/{token}")
def download_executed_file(
    token: str,
    session: Annotated[Session, Depends(get_db)],
    config: Annotated[SigningConfig, Depends(get_signing_config)],
    storage: Annotated[StorageBackend, Depends(get_storage_backend)],
    range_header: Annotated[str | None, Header(alias="range")] = None,
) -> Response:
    try:
        file_id: UUID = decode_executed_file_token(token, config.signing_secret)
    except AccessTokenExpired as exc:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Executed document not found") from exc

    stored = session.get(StoredFile, file_id)
    if not stored:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Executed document not found")

    try:
        content = storage.download_artifact(str(stored.org_id), stored.storage_path)
    except ArtifactNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Executed document not found") from exc
    except SigningError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    size = len(content)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Disposition": f'inline; filename="{stored.file_name}"',
        "Cache-Control": "private, no-store",
    }
    try:
        byte_range = parse_byte_range(range_header, size)
    except RangeNotSatisfiable:
        headers["Content-Range"] = f"bytes */{size}"
        return Response(status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE, headers=headers)

    if byte_range is None:
        return Response(content=content, media_type=stored.mime_type, headers=headers)

    start, end = byte_range
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    return Response(
        content=content[start : end + 1],
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type=stored.mime_type,
        headers=headers,
    )
