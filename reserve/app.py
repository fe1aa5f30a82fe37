# reserve/app.py
import time
import logging
from typing import Optional

# Load .env BEFORE any reserve imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Request, Path, Query
from fastapi.responses import JSONResponse, Response, PlainTextResponse

from reserve.broker import RequestBroker
from reserve.config import BrokerSettings
from reserve.errors import BrokerError
from reserve.schemas import SubmitRequest, CallbackRequest, GasBudgetUpdate
from reserve import monitoring
from reserve import auth as authmod
from reserve import db as dbmod

app = FastAPI(title="AI Reserve compute broker")

# Initialize DB tables on startup
dbmod.init_db()

# instantiate broker once; the oracle endpoint is fixed from here on
broker = RequestBroker(BrokerSettings.from_env())
broker.seed_defaults()
authmod.warn_if_mock_auth()

API_KEY_HEADER = "x-api-key"
PRINCIPAL_HEADER = "x-principal"


def _error(status_code: int, error_code: str, message: str, request_id=None, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "request_id": request_id,
            "status": "error",
            "error_code": error_code,
            "message": message,
            "details": details or {},
        },
    )


# ---------------------------------------------------------------------------
# Auth + rate-limit middleware (runs first on /api/* paths)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def principal_and_rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    principal = authmod.resolve_principal(
        request.headers.get(API_KEY_HEADER),
        request.headers.get(PRINCIPAL_HEADER),
    )
    if principal is None:
        return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})
    request.state.principal = principal

    allowed, _remaining = authmod.check_rate_limit(principal)
    if not allowed:
        resp = _error(429, "E_RATE_LIMIT", "Rate limit exceeded")
        resp.headers["Retry-After"] = "60"
        return resp

    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, endpoint, method, status)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(BrokerError)
async def broker_error_handler(request: Request, exc: BrokerError):
    level = logging.ERROR if exc.http_status >= 500 else logging.WARNING
    monitoring.logger.log(level, exc.message, extra={"error_code": exc.code, "path": request.url.path})
    body = exc.to_dict()
    return _error(
        exc.http_status,
        exc.code,
        exc.message,
        request_id=exc.details.get("request_id"),
        details={**body["details"], "retryable": exc.retryable},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    monitoring.logger.exception("Unexpected error", extra={"path": request.url.path})
    return _error(500, "E_INTERNAL", "Internal server error", details={"exception": str(exc)})


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.get("/api/fee")
def api_fee(model_id: Optional[int] = Query(None, ge=0), gas_limit: Optional[int] = Query(None, ge=0)):
    """
    GET /api/fee?model_id=11&gas_limit=5000000
    Both parameters are optional: the served model and its configured budget are the defaults.
    """
    model = broker.model_id if model_id is None else model_id
    gas = broker.effective_gas_limit(model, gas_limit)
    fee = broker.estimate_fee(model, gas)
    return {"status": "success", "model_id": model, "gas_limit": gas, "fee": str(fee)}


@app.post("/api/requests")
def api_submit(req: SubmitRequest, request: Request):
    """
    POST /api/requests
    Body: { "amount": 0, "prompt": "...", "payment": "10000000000000000" }
    The submitter is the authenticated principal.
    """
    submitter = request.state.principal
    monitoring.logger.info("Received submission", extra={"prompt_preview": req.prompt[:200], "submitter": submitter})
    request_id = broker.submit(req.amount, req.prompt, submitter, req.payment)
    return {"request_id": str(request_id), "status": "pending"}


@app.get("/api/requests/{request_id}")
def api_get_request(request_id: int = Path(..., ge=0, description="Oracle-assigned request id")):
    rec = broker.get_request(request_id)
    if not rec:
        return _error(404, "E_NOT_FOUND", "Request not found", request_id=str(request_id))
    return {"request_id": str(request_id), "status": "success", "record": rec}


@app.post("/api/callback")
def api_callback(req: CallbackRequest, request: Request):
    """
    POST /api/callback  (oracle only)
    Body: { "request_id": 1, "output": "0x3432", "callback_data": "0x" }
    """
    rec = broker.resolve(
        req.request_id,
        req.output_bytes(),
        req.callback_data_bytes(),
        caller=request.state.principal,
    )
    return {"request_id": str(req.request_id), "status": "success", "record": rec}


@app.get("/api/results")
def api_result(model_id: int = Query(..., ge=0), prompt: str = Query(...), amount: int = Query(0, ge=0)):
    """
    GET /api/results?model_id=11&prompt=Hello%20World[&amount=0]
    An empty output means nothing was resolved for the pair (or it resolved to empty).
    """
    output = broker.get_result(model_id, prompt, amount)
    return {
        "status": "success",
        "model_id": model_id,
        "prompt": prompt,
        "output": "0x" + output.hex(),
        "output_text": output.decode("utf-8", errors="replace"),
    }


@app.get("/api/events")
def api_events(after: int = Query(0, ge=0), limit: int = Query(100, ge=1, le=1000),
               request_id: Optional[int] = Query(None, ge=0)):
    events = broker.list_events(after_id=after, limit=limit, request_id=request_id)
    return {"status": "success", "events": events}


@app.get("/api/admin/gas-budgets")
def api_list_gas_budgets():
    budgets = broker.list_gas_budgets()
    return {"status": "success", "gas_budgets": {str(k): v for k, v in budgets.items()}}


@app.put("/api/admin/gas-budgets/{model_id}")
def api_set_gas_budget(req: GasBudgetUpdate, request: Request, model_id: int = Path(..., ge=0)):
    broker.set_gas_budget(model_id, req.gas_limit, caller=request.state.principal)
    return {"status": "success", "model_id": model_id, "gas_limit": req.gas_limit}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    broker.refresh_pending_gauge()
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
