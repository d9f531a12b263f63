"""FastAPI web application for ShelfScan."""

from __future__ import annotations

import os
from datetime import datetime, timezone

import structlog
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from ..core.errors import (
    NotFoundError,
    RecordNotFoundError,
    ShelfscanError,
    StoreError,
    ValidationError,
)
from ..core.isbn import normalize_isbn
from ..core.lookup import BookLookup
from ..core.reconciler import CatalogReconciler
from ..core.store import FOLDER_FIELDS, MemoryStore, RecordStore, SqliteStore

load_dotenv()

log = structlog.get_logger()

VERSION = "0.1.0"
MAX_BODY_BYTES = int(os.environ.get("MAX_BODY_BYTES", "10000"))

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-user-id",
    "Access-Control-Allow-Methods": "GET, POST, PATCH, DELETE, OPTIONS",
}


def _make_store() -> RecordStore:
    if os.environ.get("STORE", "sqlite") == "memory":
        return MemoryStore()
    return SqliteStore()


def create_app(
    reconciler: CatalogReconciler | None = None,
    lookup: BookLookup | None = None,
) -> FastAPI:
    """Build the app. Tests pass their own reconciler/lookup."""
    if reconciler is None:
        reconciler = CatalogReconciler(_make_store(), lookup or BookLookup())
    lookup = lookup or reconciler.lookup

    app = FastAPI(title="ShelfScan", docs_url=None, redoc_url=None)
    app.state.reconciler = reconciler
    app.state.lookup = lookup

    @app.middleware("http")
    async def response_headers(request: Request, call_next):
        if request.method == "OPTIONS":
            # CORS preflight
            response = Response(status_code=200)
        else:
            response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.exception_handler(ShelfscanError)
    async def shelfscan_error(request: Request, exc: ShelfscanError):
        return _error_response(exc)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION,
            "environment": os.environ.get("ENV", "dev"),
        }

    @app.post("/api/isbn-lookup")
    async def isbn_lookup(request: Request):
        try:
            if _body_size(request) > MAX_BODY_BYTES:
                return JSONResponse({"error": "Request too large."}, status_code=413)
            body = await _json_body(request)
            isbn = _clean_isbn(body.get("isbn"))
            log.info("lookup_requested", isbn=isbn)
            metadata = await app.state.lookup.fetch(isbn)
        except ShelfscanError as e:
            return _error_response(e)
        except Exception as e:
            log.exception("lookup_failed")
            return JSONResponse({"error": str(e) or "Unknown error"}, status_code=500)

        return metadata.to_dict()

    @app.get("/api/catalog")
    async def catalog(request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        entries, folders = await app.state.reconciler.load(user_id)
        return {
            "books": [e.to_dict() for e in entries],
            "folders": [f.to_dict() for f in folders],
        }

    @app.post("/api/catalog/scan")
    async def scan(request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        body = await _json_body(request)
        isbn = _clean_isbn(body.get("isbn"))
        folder_id = body.get("folderId")
        if folder_id is not None:
            await _owned_folder(app, user_id, folder_id)

        entry = await app.state.reconciler.scan(user_id, isbn, folder_id)
        status = 201 if entry.quantity == 1 else 200
        return JSONResponse(entry.to_dict(), status_code=status)

    @app.post("/api/books/{entry_id}/increment")
    async def increment(entry_id: str, request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        await _owned_entry(app, user_id, entry_id)
        entry = await app.state.reconciler.increment_quantity(entry_id)
        return entry.to_dict()

    @app.post("/api/books/{entry_id}/decrement")
    async def decrement(entry_id: str, request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        await _owned_entry(app, user_id, entry_id)
        entry = await app.state.reconciler.decrement_quantity(entry_id)
        return entry.to_dict()

    @app.patch("/api/books/{entry_id}/folder")
    async def move(entry_id: str, request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        body = await _json_body(request)
        if "folderId" not in body:
            raise ValidationError("folderId is required (null to unfile)")
        folder_id = body["folderId"]
        await _owned_entry(app, user_id, entry_id)
        if folder_id is not None:
            await _owned_folder(app, user_id, folder_id)
        entry = await app.state.reconciler.move_to_folder(entry_id, folder_id)
        return entry.to_dict()

    @app.delete("/api/books/{entry_id}")
    async def delete_book(entry_id: str, request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        await _owned_entry(app, user_id, entry_id)
        await app.state.reconciler.delete(entry_id)
        return Response(status_code=204)

    @app.get("/api/folders")
    async def list_folders(request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        folders = await app.state.reconciler.store.get_folders(user_id)
        return [f.to_dict() for f in folders]

    @app.post("/api/folders")
    async def create_folder(request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        fields = _folder_fields(await _json_body(request))
        folder = await app.state.reconciler.create_folder(
            user_id,
            fields.get("name") or "",
            color=fields.get("color"),
            icon=fields.get("icon"),
            description=fields.get("description"),
        )
        return JSONResponse(folder.to_dict(), status_code=201)

    @app.patch("/api/folders/{folder_id}")
    async def update_folder(folder_id: str, request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        fields = _folder_fields(await _json_body(request))
        await _owned_folder(app, user_id, folder_id)
        folder = await app.state.reconciler.update_folder(folder_id, **fields)
        return folder.to_dict()

    @app.delete("/api/folders/{folder_id}")
    async def delete_folder(folder_id: str, request: Request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthorized()
        await _owned_folder(app, user_id, folder_id)
        moved = await app.state.reconciler.delete_folder(folder_id)
        return {"unfiled": moved}

    return app


def _error_response(exc: ShelfscanError) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        return JSONResponse({"error": str(exc), "isbn": exc.isbn}, status_code=404)
    if isinstance(exc, ValidationError):
        return JSONResponse({"error": str(exc)}, status_code=400)
    if isinstance(exc, RecordNotFoundError):
        return JSONResponse({"error": str(exc)}, status_code=404)
    if isinstance(exc, StoreError):
        log.error("store_failed", error=str(exc))
    return JSONResponse({"error": str(exc)}, status_code=500)


def _body_size(request: Request) -> int:
    content_length = request.headers.get("content-length")
    if not content_length:
        return 0
    try:
        return int(content_length)
    except ValueError as e:
        raise ValidationError("Invalid Content-Length header") from e


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "Sign in required."}, status_code=401)


def _user_id(request: Request) -> str | None:
    return request.headers.get("x-user-id") or None


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _clean_isbn(raw: object) -> str:
    """Remove dashes and spaces; empty or missing ISBNs are rejected."""
    if raw is not None and not isinstance(raw, str):
        raise ValidationError("ISBN must be a string")
    isbn = normalize_isbn(raw or "")
    if not isbn:
        raise ValidationError("ISBN is required")
    return isbn


def _folder_fields(body: dict) -> dict[str, str | None]:
    """Keep only editable folder fields; each must be a string or null."""
    unknown = set(body) - FOLDER_FIELDS
    if unknown:
        raise ValidationError(f"Unknown folder fields: {', '.join(sorted(unknown))}")
    for key, value in body.items():
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")
    return dict(body)


async def _owned_entry(app: FastAPI, user_id: str, entry_id: str) -> None:
    entry = await app.state.reconciler.store.get_entry(entry_id)
    if entry.user_id != user_id:
        raise RecordNotFoundError(f"Book {entry_id} not found")


async def _owned_folder(app: FastAPI, user_id: str, folder_id: str) -> None:
    folder = await app.state.reconciler.store.get_folder(folder_id)
    if folder.user_id != user_id:
        raise RecordNotFoundError(f"Folder {folder_id} not found")


def main():
    port = int(os.environ.get("PORT", "8000"))
    is_dev = os.environ.get("ENV", "dev") == "dev"
    uvicorn.run(
        "shelfscan.web.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=port,
        reload=is_dev,
    )
