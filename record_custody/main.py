import logging
from typing import Optional

from fastapi import FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import Response

from . import config
from .blobstore import BlobStore, InMemoryBlobStore, IpfsBlobStore
from .cipher import BlobCipher
from .custody import InMemoryKeyCustodyStore, KeyCustodyStore
from .db import SqliteKeyCustodyStore
from .errors import (
    BlobNotFound, BlobStoreError, CryptoFailure, CustodyCorruption, CustodyError,
    DecryptFailure, Forbidden, HandleConflict, KeyNotFound, LedgerError, ValidationError,
)
from .gateway import CustodyGateway
from .ledger import HttpLedgerClient, InMemoryLedger, LedgerClient
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    AssociateRequest, AssociateResponse, KeyResponse, OverwriteRequest,
    ReconcileRequest, ReconcileResponse, UploadResponse,
)
from .rate_limit import RateLimiter
from .reconciliation import sweep_orphans
from .sealing import get_sealer
from .security import (
    sanitize_for_logging, validate_content_hash, validate_handle,
    validate_identity, validate_key_hex, validate_record_id,
)
from .util import constant_time_compare, load_json

log = logging.getLogger("record_custody.api")

app = FastAPI(title="Record Key Custody Service")

# Most specific first: subclasses before their bases
ERROR_STATUS = (
    (ValidationError, 400),
    (Forbidden, 403),
    (KeyNotFound, 404),
    (BlobNotFound, 404),
    (HandleConflict, 409),
    (DecryptFailure, 422),
    (BlobStoreError, 502),
    (LedgerError, 502),
    (CustodyCorruption, 500),
    (CryptoFailure, 500),
)


def _http_error(e: CustodyError) -> HTTPException:
    for exc_type, status in ERROR_STATUS:
        if isinstance(e, exc_type):
            return HTTPException(status, e.code)
    return HTTPException(500, e.code)


def get_store() -> KeyCustodyStore:
    if config.STORE_BACKEND == "sqlite":
        sealer = get_sealer(
            sealer_type=config.SEALER_TYPE,
            master_key_path=config.MASTER_KEY_PATH,
            kms_key_id=config.AWS_KMS_KEY_ID or None,
            kms_region=config.AWS_REGION or None,
        )
        return SqliteKeyCustodyStore(config.DB_PATH, sealer)
    return InMemoryKeyCustodyStore()


def get_ledger() -> LedgerClient:
    if config.LEDGER_BACKEND == "http":
        return HttpLedgerClient(
            config.LEDGER_URL,
            timeout=config.LEDGER_TIMEOUT_SECONDS,
            retries=config.LEDGER_RETRIES,
        )
    if config.LEDGER_FIXTURE_PATH:
        return InMemoryLedger.from_dict(load_json(config.LEDGER_FIXTURE_PATH))
    return InMemoryLedger()


def get_blob_store() -> BlobStore:
    if config.BLOB_STORE == "ipfs":
        return IpfsBlobStore(config.IPFS_API_URL, timeout=config.IPFS_TIMEOUT_SECONDS)
    return InMemoryBlobStore()


def build_gateway() -> CustodyGateway:
    return CustodyGateway(
        store=get_store(),
        blob_store=get_blob_store(),
        ledger=get_ledger(),
        cipher=BlobCipher(config.CIPHER_SCHEME),
        max_upload_bytes=config.MAX_UPLOAD_BYTES,
    )


upload_limiter = RateLimiter(config.UPLOAD_RPM)
get_key_limiter = RateLimiter(config.GET_KEY_RPM)
GATEWAY: Optional[CustodyGateway] = None


@app.on_event("startup")
def _startup():
    global GATEWAY
    configure_logging("DEBUG" if config.is_debug() else config.LOG_LEVEL, json_format=config.LOG_JSON)
    missing = [name for name, ok in config.validate_config().items() if not ok]
    if missing:
        log.warning("configured files missing: %s", ", ".join(missing))
    if config.is_production() and config.STORE_BACKEND == "memory":
        log.warning("in-memory key custody in production: every key is lost on restart")
    if GATEWAY is not None:
        GATEWAY.store.close()
    GATEWAY = build_gateway()


@app.middleware("http")
async def _request_id(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or None)
    log.debug("%s %s headers=%s", request.method, request.url.path,
              sanitize_for_logging(dict(request.headers)))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _throttle(limiter: RateLimiter, key: str, endpoint: str) -> None:
    if not limiter.allow(key):
        audit_log.rate_limit_exceeded(key, endpoint)
        raise HTTPException(429, "RATE_LIMIT")


def _require_admin(token: Optional[str], endpoint: str) -> None:
    expected = config.ADMIN_TOKEN
    if not expected or not token or not constant_time_compare(token, expected):
        audit_log.security_event("admin_auth_failed", severity="high", endpoint=endpoint)
        raise HTTPException(401, "ADMIN_TOKEN_REQUIRED")


@app.get("/healthz")
def healthz():
    return GATEWAY.health()


@app.post("/upload", response_model=UploadResponse)
def upload(file: UploadFile = File(...)):
    _throttle(upload_limiter, "upload", "/upload")
    # one byte over the cap is enough to reject without reading the rest
    data = file.file.read(config.MAX_UPLOAD_BYTES + 1)
    try:
        receipt = GATEWAY.upload(data)
    except CustodyError as e:
        raise _http_error(e)
    return UploadResponse(content_handle=receipt.content_hash, size=receipt.size)


@app.post("/associate-key", response_model=AssociateResponse)
def associate_key(req: AssociateRequest):
    try:
        content_hash = validate_content_hash(req.content_handle)
        rec = GATEWAY.associate(content_hash, validate_record_id(req.record_id))
    except CustodyError as e:
        raise _http_error(e)
    return AssociateResponse(handle=rec.handle)


@app.get("/get-key/{record_id}/{account}", response_model=KeyResponse)
def get_key(record_id: int, account: str):
    try:
        record_id = validate_record_id(record_id)
        account = validate_identity(account)
    except ValidationError as e:
        raise _http_error(e)
    _throttle(get_key_limiter, f"get_key:{account.lower()}", "/get-key")
    try:
        key_hex = GATEWAY.retrieve_key(record_id, account)
    except CustodyError as e:
        raise _http_error(e)
    return KeyResponse(key=key_hex)


@app.get("/records/{record_id}/content")
def record_content(record_id: int, account: str):
    try:
        record_id = validate_record_id(record_id)
        account = validate_identity(account)
    except ValidationError as e:
        raise _http_error(e)
    _throttle(get_key_limiter, f"get_key:{account.lower()}", "/records/content")
    try:
        plaintext = GATEWAY.download(record_id, account)
    except CustodyError as e:
        raise _http_error(e)
    return Response(content=plaintext, media_type="application/octet-stream")


# ============================================================
# Administration
# ============================================================

@app.post("/admin/reconcile", response_model=ReconcileResponse)
def admin_reconcile(req: Optional[ReconcileRequest] = None,
                    x_admin_token: Optional[str] = Header(default=None)):
    _require_admin(x_admin_token, "/admin/reconcile")
    req = req or ReconcileRequest()
    max_age = config.ORPHAN_MAX_AGE_SECONDS if req.max_age_seconds is None else req.max_age_seconds
    report = sweep_orphans(GATEWAY, max_age_seconds=max_age, dry_run=req.dry_run)
    return ReconcileResponse(**report.to_dict())


@app.delete("/admin/keys/{handle}")
def admin_purge(handle: str, x_admin_token: Optional[str] = Header(default=None)):
    _require_admin(x_admin_token, "/admin/keys")
    try:
        GATEWAY.purge(validate_handle(handle))
    except CustodyError as e:
        raise _http_error(e)
    return {"success": True}


@app.put("/admin/keys/{handle}")
def admin_overwrite(handle: str, req: OverwriteRequest,
                    x_admin_token: Optional[str] = Header(default=None)):
    _require_admin(x_admin_token, "/admin/keys")
    try:
        GATEWAY.overwrite(validate_handle(handle), validate_key_hex(req.key))
    except CustodyError as e:
        raise _http_error(e)
    return {"success": True}
