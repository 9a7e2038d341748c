"""
Invoicely Approvals - FastAPI Backend

Invoice approval workflow service: user-defined approval workflows,
invoice submission with conditional auto-approval, multi-step
approve/reject processing and approver notifications.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health
"""
import time

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from invoicely.api import approvals_router
from invoicely.core.database import get_db
from invoicely.services.errors import ErrorCode, InvoicelyError
from invoicely.services.logging import log_request, log_error, logger

app = FastAPI(
    title="Invoicely Approvals API",
    description="""
    Invoicely Approvals API - Invoice Approval Workflows

    ## Workflows
    - Ordered approval steps with named approvers per step
    - Optional auto-approval below an amount threshold
    - Single-step or all-steps completion policy

    ## Approvals
    - Submit invoices, approve or reject at the current step
    - Pending queue, per-invoice history and statistics
    - Email notifications to approvers and submitters

    ## Authentication
    Send `Authorization: Bearer <jwt>` (signed with `INVOICELY_SECRET_KEY`)
    or an `X-API-Key: org_<org_id>_<secret>` header.
    """,
    version="1.0.0",
)

app.include_router(approvals_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log every request."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id
            )
            return response
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(InvoicelyError)
async def invoicely_exception_handler(request: Request, exc: InvoicelyError):
    """Handle all InvoicelyErrors with structured responses."""
    if exc.status_code >= 500:
        log_error(exc.code.value, str(exc), {"path": request.url.path, **exc.context})
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code.value, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return JSONResponse(
        status_code=400,
        content={
            "error": ErrorCode.VALIDATION_FAILED.value,
            "message": first.get("msg", "Invalid request"),
            "context": {"field": field} if field else {},
        }
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": request.url.path, "method": request.method},
        exception=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again or contact support.",
        }
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    get_db().initialize()


@app.get("/health", tags=["System"])
async def health():
    return {"status": "healthy", "version": "v1.0.0"}
