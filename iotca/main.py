import asyncio
import contextlib
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from . import __version__
from .authority import CertificateAuthority, build_authority
from .config import Settings
from .errors import AuthenticationFailed, AuthorityError, Forbidden, ValidationError
from .logging_config import audit_log, set_request_id
from .models import (
    ApprovalDecisionBody,
    AuthenticateBody,
    ConnectionRequestBody,
    GenerateTokenBody,
    RequestDataBody,
    RequestKeyBody,
    SubmitDataBody,
)
from .rate_limit import RateLimiter
from .security import extract_client_id, sanitize_for_logging
from .util import constant_time_compare, utc_rfc3339

logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL_SECONDS = 60

router = APIRouter()


def get_authority(request: Request) -> CertificateAuthority:
    return request.app.state.authority


def client_id(request: Request) -> str:
    return extract_client_id(dict(request.headers), request.client.host if request.client else None)


def require_admin(request: Request, x_admin_token: Optional[str] = Header(default=None)) -> None:
    expected = request.app.state.authority.settings.admin_token
    if not expected:
        raise Forbidden("admin API is disabled (no admin token configured)")
    if not x_admin_token or not constant_time_compare(expected, x_admin_token):
        audit_log.security_event("admin_token_rejected", client_id=client_id(request))
        raise AuthenticationFailed("invalid admin token")


# ---------------------------
# Onboarding and challenge-response
# ---------------------------

@router.post("/connectionRequest")
async def connection_request(req: ConnectionRequestBody, request: Request,
                             ca: CertificateAuthority = Depends(get_authority)):
    request.app.state.connect_limiter.enforce(client_id(request), "/connectionRequest")
    result = await ca.connection_request(req.identity(), req.metadata(), req.private_key, req.target_service_id)
    return result.to_dict()


@router.post("/generateToken")
def generate_token(req: GenerateTokenBody, request: Request, ca: CertificateAuthority = Depends(get_authority)):
    request.app.state.auth_limiter.enforce(client_id(request), "/generateToken")
    challenge = ca.issue_token(req.service_name)
    return {"token": challenge.nonce, "expiresAt": utc_rfc3339(int(challenge.expires_at))}


@router.post("/authenticate")
def authenticate(req: AuthenticateBody, request: Request, ca: CertificateAuthority = Depends(get_authority)):
    request.app.state.auth_limiter.enforce(client_id(request), "/authenticate")
    session = ca.authenticate(req.service_name, req.to_proof())
    if session is None:
        body = AuthenticationFailed("proof rejected or no pending challenge").to_dict()
        body["authenticated"] = False
        return JSONResponse(status_code=401, content=body)
    return {
        "authenticated": True,
        "sessionToken": session.token,
        "expiresAt": utc_rfc3339(int(session.expires_at)),
    }


# ---------------------------
# Data plane
# ---------------------------

@router.post("/requestKey")
def request_key(req: RequestKeyBody, ca: CertificateAuthority = Depends(get_authority)):
    target = ca.request_key(req.requester_service_id, req.to_proof(), req.target_service_id)
    return {"privateKey": target.private_key, "serviceId": target.service_id, "algorithm": target.algorithm}


@router.post("/submitData")
def submit_data(req: SubmitDataBody, ca: CertificateAuthority = Depends(get_authority)):
    sealed = req.record.to_sealed()
    stored = ca.submit_data(req.service_id, req.to_proof(), req.record.collection, sealed)
    return {
        "success": True,
        "message": "Data stored",
        "recordId": stored.record_id,
        "storageKeyId": stored.storage_key_id,
    }


@router.post("/requestDecryptedData")
def request_decrypted_data(req: RequestDataBody, ca: CertificateAuthority = Depends(get_authority)):
    records = ca.request_decrypted_data(req.requester_service_id, req.to_proof(), req.target_service_id,
                                        req.collection)
    return {"data": [r.to_dict() for r in records]}


@router.get("/publicKey/{service_name}", response_class=PlainTextResponse)
def public_key_by_name(service_name: str, ca: CertificateAuthority = Depends(get_authority)):
    return ca.get_public_key(service_name=service_name)


@router.get("/services/{service_id}/publicKey", response_class=PlainTextResponse)
def public_key_by_id(service_id: str, ca: CertificateAuthority = Depends(get_authority)):
    return ca.get_public_key(service_id=service_id)


# ---------------------------
# Operations
# ---------------------------

@router.get("/approvals", dependencies=[Depends(require_admin)])
def list_approvals(ca: CertificateAuthority = Depends(get_authority)):
    return {"pending": [r.to_dict() for r in ca.pending_approvals()]}


@router.post("/approvals/{request_id}", dependencies=[Depends(require_admin)])
def decide_approval(request_id: str, req: ApprovalDecisionBody, ca: CertificateAuthority = Depends(get_authority)):
    ca.resolve_approval(request_id, req.approved)
    return {"resolved": True, "requestId": request_id, "approved": req.approved}


@router.get("/healthz")
def healthz(ca: CertificateAuthority = Depends(get_authority)):
    return {"status": "ok", "version": __version__, **ca.stats()}


# ---------------------------
# Application factory
# ---------------------------

async def _authority_error(request: Request, exc: AuthorityError) -> JSONResponse:
    if exc.status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = None
    if getattr(exc, "retry_after", None) is not None:
        headers = {"Retry-After": str(max(1, int(exc.retry_after + 0.999)))}
    return JSONResponse(status_code=int(exc.status), content=exc.to_dict(), headers=headers)


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    err = ValidationError(".".join(loc) or "body", first.get("msg", "invalid request"))
    if isinstance(exc.body, dict):
        logger.info("%s rejected (%s): %s", request.url.path, err.field, sanitize_for_logging(exc.body))
    return JSONResponse(status_code=int(err.status), content=err.to_dict())


async def _housekeeping(app: FastAPI) -> None:
    """Drop expired challenges, sessions and rate limit windows."""
    while True:
        await asyncio.sleep(HOUSEKEEPING_INTERVAL_SECONDS)
        purged = app.state.authority.authenticator.purge_expired()
        purged += app.state.connect_limiter.cleanup_expired()
        purged += app.state.auth_limiter.cleanup_expired()
        if purged:
            logger.debug("Housekeeping removed %d expired entries", purged)


def create_app(settings: Optional[Settings] = None, authority: Optional[CertificateAuthority] = None) -> FastAPI:
    """
    Build the HTTP application around one authority instance.

    The authority is constructed here (or injected) and closed when the
    application shuts down.
    """
    if authority is None:
        authority = build_authority(settings or Settings.from_env())
    settings = authority.settings

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(_housekeeping(app))
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            app.state.authority.close()

    app = FastAPI(title="IoT Certificate Authority", version=__version__, lifespan=lifespan)
    app.state.authority = authority
    app.state.connect_limiter = RateLimiter(settings.connect_rpm)
    app.state.auth_limiter = RateLimiter(settings.authenticate_rpm)

    app.add_exception_handler(AuthorityError, _authority_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = set_request_id((request.headers.get("x-request-id") or "")[:128] or None)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        response.headers["Cache-Control"] = "no-store"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    app.include_router(router)
    return app
