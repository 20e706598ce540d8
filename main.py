from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from sqlalchemy.orm import Session
from functools import partial
from typing import List, Optional
import uuid
import logging
import redis
import httpx
from contextlib import asynccontextmanager

# Local imports
from config import Settings
from database import get_db, create_db_engine, create_session_factory, create_tables, Job
from job_store import JobStatus
from models import JobStatusResponse, ExecutionLogResponse
from security import SecurityManager
from stages import STAGES, build_context
from wrapper import serve_with_notification
from rate_limiter import setup_rate_limiting
from health import health_router
from monitoring import setup_monitoring
from utils.ai_client import AIClient
from utils.notifier import Notifier

logger = logging.getLogger(__name__)

STAGE_PREFIX = "/functions/v1"
SHUTDOWN_DRAIN_SECONDS = 30


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(settings.log_file),
            logging.StreamHandler()
        ]
    )


def create_app(settings: Optional[Settings] = None, ai: Optional[AIClient] = None,
               notifier: Optional[Notifier] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the API: stage endpoints, job API, health and metrics."""
    settings = settings or Settings()
    configure_logging(settings)

    engine = create_db_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    pipeline = build_context(settings, session_factory, ai=ai, notifier=notifier, transport=transport)
    security_manager = SecurityManager(settings.api_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        # Startup
        try:
            create_tables(engine)
            logger.info("Application started successfully")
        except Exception as e:
            logger.error(f"Startup error: {e}")
            raise

        try:
            redis.from_url(settings.redis_url).ping()
            logger.info("Redis connection established")
        except Exception as e:
            # Stages still run; only the stage poller depends on Redis
            logger.warning(f"Redis unavailable, stage poller will not run: {e}")

        if not settings.functions_base_url:
            logger.warning("FUNCTIONS_BASE_URL is not set; stages cannot trigger each other")

        yield

        # Shutdown
        logger.info("Application shutting down")
        await pipeline.dispatcher.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        engine.dispose()

    app = FastAPI(
        title="Site Audit Pipeline",
        description="Crawls a site's sitemap, scores each page and produces AI-written SEO reports",
        version="1.0.0",
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.pipeline = pipeline
    app.state.security = security_manager

    # Security middleware
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"]  # Configure properly for production
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    setup_rate_limiting(app, settings)
    setup_monitoring(app)

    app.include_router(health_router, prefix="/health", tags=["health"])

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Global exception on {request.url}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "error_id": str(uuid.uuid4())}
        )

    # Pipeline stages
    for stage_name, handler in STAGES.items():
        app.add_api_route(
            f"{STAGE_PREFIX}/{stage_name}",
            serve_with_notification(
                stage_name,
                partial(handler, pipeline),
                pipeline.notifier,
                pipeline.dispatcher,
                security=security_manager,
            ),
            methods=["POST", "OPTIONS"],
            tags=["stages"],
        )

    # Job API
    @app.get("/jobs/{job_id}", response_model=JobStatusResponse, tags=["jobs"])
    def get_job_status(job_id: str):
        """Get job status and resumable state"""

        job = pipeline.jobs.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")

        state = pipeline.jobs.get_state(job_id) or {}
        return JobStatusResponse(
            job_id=job["id"],
            project_id=job.get("project_id"),
            type=job.get("type"),
            status=job["status"],
            started_at=job.get("started_at"),
            completed_at=job.get("completed_at"),
            error_message=job.get("error_message"),
            next_stage=job.get("next_stage"),
            cursor=state.get("cursor"),
            progress=state.get("batch_progress"),
            created_at=job.get("created_at"),
        )

    @app.get("/jobs/{job_id}/logs", response_model=List[ExecutionLogResponse], tags=["jobs"])
    def get_job_logs(job_id: str):
        """Execution log entries for a job, oldest first"""

        if not pipeline.jobs.get_job(job_id):
            raise HTTPException(status_code=404, detail="Job not found")
        return [ExecutionLogResponse(**entry) for entry in pipeline.jobs.get_logs(job_id)]

    @app.get("/jobs", tags=["jobs"])
    def list_jobs(
        skip: int = 0,
        limit: int = 100,
        status: str = None,
        project_id: str = None,
        db: Session = Depends(get_db),
        api_key: str = Depends(security_manager.get_api_key)
    ):
        """List jobs (admin endpoint)"""

        query = db.query(Job)

        if status:
            query = query.filter(Job.status == status)
        if project_id:
            query = query.filter(Job.project_id == project_id)

        jobs = query.order_by(Job.created_at.desc()).offset(skip).limit(limit).all()

        return {
            "jobs": [
                {
                    "id": job.id,
                    "project_id": job.project_id,
                    "type": job.type,
                    "status": job.status,
                    "next_stage": job.next_stage,
                    "created_at": job.created_at,
                    "updated_at": job.updated_at
                }
                for job in jobs
            ]
        }

    @app.post("/jobs/{job_id}/reset", tags=["jobs"])
    def reset_job(job_id: str, api_key: str = Depends(security_manager.get_api_key)):
        """Put a job back to queued so the audit can run again from the start"""

        if not pipeline.jobs.get_job(job_id):
            raise HTTPException(status_code=404, detail="Job not found")
        if not pipeline.jobs.reset(job_id):
            raise HTTPException(status_code=500, detail="Failed to reset job")
        pipeline.jobs.log(job_id, "api", "info", "Job reset to queued")
        return {"job_id": job_id, "status": JobStatus.QUEUED.value}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000)
