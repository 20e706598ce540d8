from fastapi import APIRouter, HTTPException, Depends, Request
from sqlalchemy import text
from sqlalchemy.orm import Session
from typing import Any, Dict
from database import get_db
import redis
import psutil
from datetime import datetime

health_router = APIRouter()

SERVICE_NAME = "Site Audit Pipeline"
SERVICE_VERSION = "1.0.0"
RESOURCE_WARNING_PERCENT = 90


def check_database(db: Session) -> Dict[str, Any]:
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy"}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


def check_redis(redis_url: str) -> Dict[str, Any]:
    """Redis backs the rate limiter and the stage poller queue."""
    try:
        conn = redis.from_url(redis_url, socket_connect_timeout=2)
        conn.ping()
        return {"status": "healthy", "connected_clients": conn.info().get("connected_clients", 0)}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


def check_system() -> Dict[str, Any]:
    try:
        usage = {
            "cpu_percent": psutil.cpu_percent(interval=0.1),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage('/').percent,
        }
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}
    busy = any(value > RESOURCE_WARNING_PERCENT for value in usage.values())
    return {"status": "warning" if busy else "healthy", **usage}


@health_router.get("/")
def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION
    }


@health_router.get("/detailed")
def detailed_health_check(request: Request, db: Session = Depends(get_db)):
    """Dependencies plus the state of in-process background work"""
    checks = {
        "database": check_database(db),
        "redis": check_redis(request.app.state.settings.redis_url),
        "system": check_system(),
    }

    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is not None:
        checks["dispatcher"] = {
            "status": "healthy",
            "pending_tasks": pipeline.dispatcher.pending,
            "ai_configured": pipeline.ai is not None,
            "notifications": pipeline.notifier.enabled,
        }

    # System pressure is reported but does not fail the check
    failing = [name for name in ("database", "redis") if checks[name]["status"] == "unhealthy"]
    health_status = {
        "status": "unhealthy" if failing else "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": checks
    }

    if failing:
        raise HTTPException(status_code=503, detail=health_status)
    return health_status


@health_router.get("/ready")
def readiness_check(request: Request, db: Session = Depends(get_db)):
    """Kubernetes readiness probe"""
    database = check_database(db)
    if database["status"] != "healthy":
        raise HTTPException(status_code=503, detail={"status": "not ready", "error": database["error"]})

    redis_check = check_redis(request.app.state.settings.redis_url)
    if redis_check["status"] != "healthy":
        raise HTTPException(status_code=503, detail={"status": "not ready", "error": redis_check["error"]})

    return {"status": "ready"}


@health_router.get("/live")
def liveness_check():
    """Kubernetes liveness probe"""
    return {"status": "alive"}
