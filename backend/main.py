"""HTTP API for the relocation planner: intake sessions and template plans.

Production features:
- Request IDs propagated into every log line and error body
- .env auto-loading
- Planner error taxonomy mapped onto HTTP status codes
- Template catalog endpoints
- Health check reporting which upstream services are configured
"""
from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from visaplan.config import Settings
from visaplan.errors import NotFound, PlannerError, ValidationFailure
from visaplan.orchestrator import Orchestrator
from visaplan.templates import get_template_plan, list_templates

# ── Setup ─────────────────────────────────────────────────────
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env")

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("backend")

settings = Settings.from_env()
orchestrator = Orchestrator.from_settings(settings)

app = FastAPI(title="Visa Plan Builder", version="1.0", docs_url="/api/docs", redoc_url=None)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


def get_orchestrator() -> Orchestrator:
    return orchestrator


def _error_body(request: Request, message: str) -> dict:
    return {"error": message, "request_id": getattr(request.state, "request_id", None)}


# ── Middleware: request ID + timing ───────────────────────────
@app.middleware("http")
async def request_meta(request: Request, call_next):
    # Honour an upstream proxy's id so log lines can be joined across hops
    rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
    request.state.request_id = rid
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        log.exception("unhandled error [%s] on %s", rid, request.url.path)
        return JSONResponse(_error_body(request, str(exc)), status_code=500)

    elapsed = round((time.perf_counter() - started) * 1000)
    response.headers["X-Request-ID"] = rid
    response.headers["X-Response-Time"] = f"{elapsed}ms"
    log.info("[%s] %s %s %d %dms", rid, request.method, request.url.path, response.status_code, elapsed)
    return response


# ── Error mapping ─────────────────────────────────────────────
_STATUS_FOR: list[tuple[type[PlannerError], int]] = [
    (ValidationFailure, 422),
    (NotFound, 404),
]


@app.exception_handler(PlannerError)
async def planner_error(request: Request, exc: PlannerError):
    # anything else is an upstream dependency failing
    status = next((code for kind, code in _STATUS_FOR if isinstance(exc, kind)), 502)
    log.warning("[%s] %s -> %d: %s", request.state.request_id, type(exc).__name__, status, exc)
    return JSONResponse(_error_body(request, str(exc)), status_code=status)


# ── Models ────────────────────────────────────────────────────
class StartRequest(BaseModel):
    prompt: str = ""
    templateId: str | None = None


class CompleteRequest(BaseModel):
    sessionId: str = ""
    answers: dict[str, str | None] = Field(default_factory=dict)


# ── Endpoints ─────────────────────────────────────────────────
@app.get("/api/health")
def health():
    return {
        "ok": True,
        "version": "1.0",
        "llm_provider": settings.llm_provider,
        "api_key_set": bool(settings.llm_api_key),
        "extraction_enabled": bool(settings.firecrawl_api_key),
        "search_enabled": bool(settings.google_search_api_key and settings.google_search_engine_id),
        "curated_store": bool(settings.weaviate_url or settings.curated_snapshot),
    }


@app.post("/api/intake/start")
async def intake_start(req: StartRequest, orch: Orchestrator = Depends(get_orchestrator)):
    session = await orch.start_session(req.prompt, req.templateId)
    defaults = None
    if session.template_plan is not None:
        ctx = session.template_plan.user_context
        defaults = {
            "visaType": ctx.visa_type,
            "deadline": ctx.deadline,
            "currentStatus": ctx.current_status,
            "location": ctx.location,
        }
    return {
        "sessionId": session.id,
        "scenarioId": session.scenario_id,
        "questions": [q.model_dump() for q in session.questions],
        "defaultAnswers": defaults,
    }


@app.post("/api/intake/complete")
async def intake_complete(req: CompleteRequest, orch: Orchestrator = Depends(get_orchestrator)):
    status, plan = await orch.complete_session(req.sessionId, req.answers)
    return {"status": status.value, "plan": plan.model_dump()}


@app.get("/api/templates")
def templates():
    return {"templates": list_templates()}


@app.get("/api/templates/{template_id}")
def template(template_id: str):
    return {"plan": get_template_plan(template_id).model_dump()}
