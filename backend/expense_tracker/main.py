from fastapi import FastAPI, APIRouter, Request
from starlette.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from expense_tracker.config import settings
from prometheus_fastapi_instrumentator import Instrumentator
from expense_tracker.api import ai, expenses, reports

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("Starting Expense Tracker API")
    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        from expense_tracker.services.container import build_services
        app.state.services = build_services(settings)
    app.state.services.store.seed_default_categories()
    logger.info("Database initialized, AI categorization %s",
                "enabled" if settings.ENABLE_AI_CATEGORIZATION else "disabled")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if owns_services:
        app.state.services.close()
        from expense_tracker.database.postgres_db import close_db
        close_db()


async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"success": False, "message": "Internal server error"}
    if not settings.is_production:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Expense Tracker API",
        description="Expense tracking with AI categorization",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    api_router = APIRouter(prefix="/api")
    api_router.include_router(expenses.router)
    api_router.include_router(ai.router)
    api_router.include_router(reports.router)
    app.include_router(api_router)

    # Initialize Prometheus metrics instrumentation
    Instrumentator().instrument(app).expose(app)

    @app.get("/")
    async def root():
        return {
            "message": "Expense Tracker API",
            "version": "1.0.0",
            "docs": "/docs"
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "expense_tracker.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True
    )
