import logging
import sys
from pathlib import Path

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

try:
    from salon_backend import app_context
    from salon_backend.app.benefits import BenefitEngineError
    from salon_backend.app.routes.benefits import router as benefits_router
    from salon_backend.settings import load_engine_settings
except ModuleNotFoundError as exc:
    if exc.name != "salon_backend":
        raise
    import app_context  # type: ignore[no-redef]
    from app.benefits import BenefitEngineError  # type: ignore[no-redef]
    from app.routes.benefits import router as benefits_router  # type: ignore[no-redef]
    from settings import load_engine_settings  # type: ignore[no-redef]


load_dotenv()

SETTINGS = load_engine_settings()
DB_CFG = SETTINGS.db_config()

logging.basicConfig(
    level=getattr(logging, SETTINGS.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("benefits")


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Salon Benefits API")


@app.exception_handler(BenefitEngineError)
async def handle_benefit_error(request: Request, exc: BenefitEngineError) -> JSONResponse:
    logger.info("Benefit request %s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": {"code": exc.code, "message": exc.message}},
    )


@app.exception_handler(HTTPException)
async def handle_http_error(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "code" in detail:
        error = dict(detail)
    else:
        error = {"code": "HTTP_ERROR", "message": str(detail)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error},
        headers=getattr(exc, "headers", None),
    )


app.include_router(benefits_router)


@app.get("/api/health")
def health() -> dict:
    return {"ok": True}
