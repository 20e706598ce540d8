import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, PlainTextResponse

from dispatch import BackgroundDispatcher
from monitoring import stage_duration, stage_runs
from security import SecurityManager
from utils.notifier import Notifier

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, access_token",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

StageHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class StageValidationError(ValueError):
    """Request is missing or has malformed required fields (HTTP 400)."""


def _json(content: Dict[str, Any], status_code: int) -> JSONResponse:
    return JSONResponse(content=json.loads(json.dumps(content, default=str)),
                        status_code=status_code, headers=CORS_HEADERS)


async def read_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise StageValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise StageValidationError("Request body must be a JSON object")
    return body


def serve_with_notification(
    stage_name: str,
    handler: StageHandler,
    notifier: Notifier,
    dispatcher: BackgroundDispatcher,
    security: Optional[SecurityManager] = None,
):
    """
    Wrap a stage handler as an endpoint with uniform CORS handling, JSON
    responses and success/failure notifications.

    Notifications are spawned on the dispatcher and never awaited here, so
    a slow or broken sink cannot delay or fail the response.
    """

    async def endpoint(request: Request):
        if request.method == "OPTIONS":
            return PlainTextResponse("ok", headers=CORS_HEADERS)

        if security is not None and not security.is_authorized(request):
            stage_runs.labels(stage=stage_name, outcome="unauthorized").inc()
            return _json({"error": "Unauthorized"}, 401)

        start = time.time()
        try:
            body = await read_body(request)
            result = await handler(body)
        except StageValidationError as e:
            logger.warning(f"Invalid request for {stage_name}: {e}")
            stage_runs.labels(stage=stage_name, outcome="invalid").inc()
            dispatcher.notify_failure(notifier, stage_name, e)
            return _json({"error": str(e)}, 400)
        except Exception as e:
            logger.error(f"Error in {stage_name}: {e}", exc_info=True)
            stage_runs.labels(stage=stage_name, outcome="error").inc()
            stage_duration.labels(stage=stage_name).observe(time.time() - start)
            dispatcher.notify_failure(notifier, stage_name, e)
            return _json({"error": str(e) or e.__class__.__name__}, 500)

        stage_runs.labels(stage=stage_name, outcome="success").inc()
        stage_duration.labels(stage=stage_name).observe(time.time() - start)
        snapshot = json.loads(json.dumps(dict(result or {}), default=str))
        dispatcher.notify_success(notifier, stage_name, snapshot)
        return JSONResponse(content=snapshot, status_code=200, headers=CORS_HEADERS)

    endpoint.__name__ = f"stage_{stage_name.replace('-', '_')}"
    return endpoint
