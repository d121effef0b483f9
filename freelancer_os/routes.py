"""
HTTP routes for the Freelancer OS API.
"""

from __future__ import annotations

import json
import logging
import queue
from dataclasses import asdict
from typing import Optional

from fastapi import (
    APIRouter,
    Body,
    Depends,
    File,
    HTTPException,
    Query,
    Response,
    UploadFile,
)
from fastapi.responses import StreamingResponse

from freelancer_os import invoices as invoice_editor
from freelancer_os import views
from freelancer_os.auth import SessionProvider
from freelancer_os.config import get_settings
from freelancer_os.dependencies import (
    get_document_store,
    get_session_provider,
    require_identity,
)
from freelancer_os.errors import NotFound
from freelancer_os.identity import Identity
from freelancer_os.schemas import (
    CreatedResponse,
    DeleteAccountRequest,
    EmailUpdate,
    FederatedLoginRequest,
    InvoiceLineUpdate,
    LoginRequest,
    MoveRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetResponse,
    PasswordUpdate,
    PhotoUploadResponse,
    ProfileUpdate,
    RecordModel,
    SignUpRequest,
    StatusResponse,
    TokenResponse,
    UserProfile,
)
from freelancer_os.security import decode_federated_assertion
from freelancer_os.store import DocumentStore
from freelancer_os.sync import COLLECTIONS, CollectionSync, open_collection

logger = logging.getLogger(__name__)

router = APIRouter()

STREAM_KEEPALIVE_SECONDS = 15


def _dump(record: RecordModel) -> dict:
    return record.model_dump(mode="json", by_alias=True)


def _snapshot(store: DocumentStore, identity: Identity, name: str) -> tuple:
    with open_collection(store, identity, name) as collection:
        state = collection.state
    if state.error:
        raise HTTPException(status_code=503, detail=state.error)
    return state.items


def _token_response(sessions: SessionProvider) -> TokenResponse:
    settings = get_settings()
    token = sessions.issue_token(settings.secret_key, settings.access_token_expire_minutes)
    return TokenResponse(access_token=token, uid=sessions.current_identity().uid)


# Auth


@router.post("/auth/signup", response_model=TokenResponse, status_code=201)
def signup(
    payload: SignUpRequest, sessions: SessionProvider = Depends(get_session_provider)
):
    sessions.sign_up(payload.email, payload.password, payload.display_name)
    return _token_response(sessions)


@router.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, sessions: SessionProvider = Depends(get_session_provider)):
    sessions.sign_in(payload.email, payload.password)
    return _token_response(sessions)


@router.post("/auth/federated", response_model=TokenResponse)
def federated_login(
    payload: FederatedLoginRequest,
    sessions: SessionProvider = Depends(get_session_provider),
):
    assertion = decode_federated_assertion(
        payload.id_token, get_settings().federated_secret
    )
    sessions.sign_in_with_federated_provider(assertion)
    return _token_response(sessions)


@router.post("/auth/logout", status_code=204)
def logout(sessions: SessionProvider = Depends(get_session_provider)):
    # Access tokens are stateless; the client discards its token.
    sessions.sign_out()
    return Response(status_code=204)


@router.post("/auth/password-reset", response_model=PasswordResetResponse)
def request_password_reset(
    payload: PasswordResetRequest,
    sessions: SessionProvider = Depends(get_session_provider),
):
    code = sessions.reset_password(payload.email)
    if get_settings().use_in_memory_backends:
        return PasswordResetResponse(status="sent", code=code)
    logger.info("Password reset code issued")
    return PasswordResetResponse(status="sent")


@router.post("/auth/password-reset/confirm", response_model=StatusResponse)
def confirm_password_reset(
    payload: PasswordResetConfirm,
    sessions: SessionProvider = Depends(get_session_provider),
):
    sessions.confirm_password_reset(payload.code, payload.new_password)
    return StatusResponse(status="ok")


# Account


@router.get("/account/profile", response_model=UserProfile, response_model_by_alias=True)
def get_profile(
    identity: Identity = Depends(require_identity),
    sessions: SessionProvider = Depends(get_session_provider),
):
    return sessions.ensure_profile()


@router.patch("/account/profile", response_model=UserProfile, response_model_by_alias=True)
def update_profile(
    payload: ProfileUpdate,
    identity: Identity = Depends(require_identity),
    sessions: SessionProvider = Depends(get_session_provider),
):
    return sessions.update_profile(**payload.model_dump(exclude_none=True))


@router.post("/account/password", response_model=StatusResponse)
def update_password(
    payload: PasswordUpdate,
    identity: Identity = Depends(require_identity),
    sessions: SessionProvider = Depends(get_session_provider),
):
    sessions.update_password(payload.new_password)
    return StatusResponse(status="ok")


@router.post("/account/email", response_model=TokenResponse)
def update_email(
    payload: EmailUpdate,
    identity: Identity = Depends(require_identity),
    sessions: SessionProvider = Depends(get_session_provider),
):
    sessions.update_email(payload.email)
    return _token_response(sessions)


@router.post("/account/photo", response_model=PhotoUploadResponse)
async def upload_photo(
    file: UploadFile = File(...),
    identity: Identity = Depends(require_identity),
    sessions: SessionProvider = Depends(get_session_provider),
):
    content = await file.read()
    photo_url = sessions.upload_profile_photo(
        file.filename or "photo", content, file.content_type
    )
    return PhotoUploadResponse(photo_url=photo_url)


@router.post("/account/delete", status_code=204)
def delete_account(
    payload: DeleteAccountRequest,
    identity: Identity = Depends(require_identity),
    sessions: SessionProvider = Depends(get_session_provider),
):
    sessions.delete_account(payload.password)
    return Response(status_code=204)


# Views


@router.get("/dashboard")
def get_dashboard(
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    summary = views.dashboard(
        clients=_snapshot(store, identity, "clients"),
        projects=_snapshot(store, identity, "projects"),
        tasks=_snapshot(store, identity, "tasks"),
        finances=_snapshot(store, identity, "finances"),
        goals=_snapshot(store, identity, "goals"),
    )
    payload = asdict(summary)
    payload["todays_tasks"] = [_dump(task) for task in summary.todays_tasks]
    return payload


@router.get("/clients/summary")
def clients_summary(
    search: str = Query(""),
    status: str = Query("all"),
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    clients = _snapshot(store, identity, "clients")
    return {
        "counts": views.client_counts(clients),
        "items": [_dump(c) for c in views.filter_clients(clients, search, status)],
    }


@router.get("/projects/board")
def projects_board(
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    projects = _snapshot(store, identity, "projects")
    clients = _snapshot(store, identity, "clients")
    summary = views.project_summary(projects)
    columns = {
        status: [
            {**_dump(p), "clientName": views.client_name(clients, p.client_id)}
            for p in column
        ]
        for status, column in views.project_board(projects).items()
    }
    return {
        "counts": summary.counts,
        "total_budget": summary.total_budget,
        "columns": columns,
    }


@router.get("/tasks/board")
def tasks_board(
    kind: str = Query("all", alias="filter"),
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    if kind not in views.TASK_FILTERS:
        raise HTTPException(status_code=400, detail=f"Unknown filter {kind!r}")
    tasks = views.filter_tasks(_snapshot(store, identity, "tasks"), kind)
    projects = _snapshot(store, identity, "projects")
    columns = {
        status: [
            {**_dump(t), "projectName": views.project_name(projects, t.project_id)}
            for t in column
        ]
        for status, column in views.task_board(tasks).items()
    }
    return {"counts": views.task_counts(tasks), "columns": columns}


@router.get("/finances/summary")
def finances_summary(
    kind: str = Query("all", alias="filter"),
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    if kind not in views.FINANCE_FILTERS:
        raise HTTPException(status_code=400, detail=f"Unknown filter {kind!r}")
    finances = _snapshot(store, identity, "finances")
    rows = views.finance_rows(
        views.filter_finances(finances, kind),
        _snapshot(store, identity, "clients"),
        _snapshot(store, identity, "projects"),
    )
    return {
        "stats": asdict(views.finance_stats(finances)),
        "items": [
            {
                **_dump(row.record),
                "clientName": row.client_name,
                "projectName": row.project_name,
            }
            for row in rows
        ],
    }


@router.get("/goals/summary")
def goals_summary(
    kind: str = Query("all", alias="filter"),
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    if kind not in views.GOAL_FILTERS:
        raise HTTPException(status_code=400, detail=f"Unknown filter {kind!r}")
    goals = _snapshot(store, identity, "goals")
    return {
        "stats": asdict(views.goal_stats(goals)),
        "items": [_dump(g) for g in views.filter_goals(goals, kind)],
    }


@router.get("/invoices/summary")
def invoices_summary(
    kind: str = Query("all", alias="filter"),
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    if kind not in views.INVOICE_FILTERS:
        raise HTTPException(status_code=400, detail=f"Unknown filter {kind!r}")
    invoices = _snapshot(store, identity, "invoices")
    clients = _snapshot(store, identity, "clients")
    return {
        "counts": views.invoice_counts(invoices),
        "items": [
            {**_dump(i), "clientName": views.client_name(clients, i.client_id)}
            for i in views.filter_invoices(invoices, kind)
        ],
    }


@router.get("/resources/summary")
def resources_summary(
    kind: str = Query("all", alias="filter"),
    search: str = Query(""),
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    if kind not in views.RESOURCE_FILTERS:
        raise HTTPException(status_code=400, detail=f"Unknown filter {kind!r}")
    resources = _snapshot(store, identity, "resources")
    return {
        "stats": asdict(views.resource_stats(resources)),
        "items": [_dump(r) for r in views.filter_resources(resources, kind, search)],
    }


# Invoice editor


def _invoice_numbers(store: DocumentStore, identity: Identity) -> list[str]:
    return [invoice.invoice_number for invoice in _snapshot(store, identity, "invoices")]


def _edit_lines(store: DocumentStore, identity: Identity, record_id: str, edit) -> list:
    with open_collection(store, identity, "invoices") as sync:
        invoice = sync.get(record_id)
        if invoice is None:
            raise NotFound(f"No invoices record with id {record_id!r}")
        items = edit(invoice.items)
        sync.update_item(record_id, items=[item.to_document() for item in items])
    return items


@router.get("/invoices/draft")
def invoice_draft(
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    """Defaults for the new-invoice form; nothing is stored."""
    return invoice_editor.draft_invoice(_invoice_numbers(store, identity))


@router.post(
    "/invoices/{record_id}/items", response_model=CreatedResponse, status_code=201
)
def add_invoice_line(
    record_id: str,
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    items = _edit_lines(store, identity, record_id, invoice_editor.add_line_item)
    return CreatedResponse(id=items[-1].id)


@router.patch("/invoices/{record_id}/items/{item_id}", response_model=StatusResponse)
def change_invoice_line(
    record_id: str,
    item_id: str,
    payload: InvoiceLineUpdate,
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    changes = payload.model_dump(exclude_none=True)
    _edit_lines(
        store,
        identity,
        record_id,
        lambda items: invoice_editor.change_line_item(items, item_id, **changes),
    )
    return StatusResponse(status="ok")


@router.delete("/invoices/{record_id}/items/{item_id}", status_code=204)
def remove_invoice_line(
    record_id: str,
    item_id: str,
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    _edit_lines(
        store,
        identity,
        record_id,
        lambda items: invoice_editor.remove_line_item(items, item_id),
    )
    return Response(status_code=204)


@router.post("/{collection}/{record_id}/move", response_model=StatusResponse)
def move_card(
    collection: str,
    record_id: str,
    payload: MoveRequest,
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    if collection not in ("projects", "tasks"):
        raise NotFound(f"{collection} has no board")
    with open_collection(store, identity, collection) as sync:
        views.move_card(sync, record_id, payload.status)
    return StatusResponse(status="ok")


# Collections


def _collection(name: str, store: DocumentStore, identity: Identity) -> CollectionSync:
    if name not in COLLECTIONS:
        raise NotFound(f"Unknown collection {name!r}")
    return CollectionSync(store, identity, name, COLLECTIONS[name])


@router.get("/{collection}/stream")
def stream_collection(
    collection: str,
    limit: Optional[int] = Query(None, ge=1),
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    """
    Server-sent events: one full snapshot per change, until the client
    disconnects or ``limit`` snapshots were sent.
    """
    sync = _collection(collection, store, identity)
    updates: queue.Queue = queue.Queue()
    sync.on_change(updates.put)
    sync.open()

    def events():
        sent = 0
        try:
            while limit is None or sent < limit:
                try:
                    state = updates.get(timeout=STREAM_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                if state.is_loading:
                    continue
                payload = {
                    "items": [_dump(item) for item in state.items],
                    "error": state.error,
                }
                yield f"data: {json.dumps(payload)}\n\n"
                sent += 1
        finally:
            sync.close()

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/{collection}")
def list_records(
    collection: str,
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    with _collection(collection, store, identity) as sync:
        state = sync.state
    if state.error:
        raise HTTPException(status_code=503, detail=state.error)
    return {"items": [_dump(item) for item in state.items]}


@router.post("/{collection}", response_model=CreatedResponse, status_code=201)
def create_record(
    collection: str,
    payload: dict = Body(...),
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    sync = _collection(collection, store, identity)
    if collection == "invoices":
        payload = invoice_editor.with_defaults(payload, _invoice_numbers(store, identity))
    return CreatedResponse(id=sync.add(payload))


@router.get("/{collection}/{record_id}")
def get_record(
    collection: str,
    record_id: str,
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    with _collection(collection, store, identity) as sync:
        record = sync.get(record_id)
    if record is None:
        raise NotFound(f"No {collection} record with id {record_id!r}")
    return _dump(record)


@router.patch("/{collection}/{record_id}", response_model=StatusResponse)
def update_record(
    collection: str,
    record_id: str,
    payload: dict = Body(...),
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    _collection(collection, store, identity).update_item(record_id, **payload)
    return StatusResponse(status="ok")


@router.delete("/{collection}/{record_id}", status_code=204)
def delete_record(
    collection: str,
    record_id: str,
    identity: Identity = Depends(require_identity),
    store: DocumentStore = Depends(get_document_store),
):
    _collection(collection, store, identity).delete_item(record_id)
    return Response(status_code=204)
