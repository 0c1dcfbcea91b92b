"""
HTTP boundary: vendor webhook, scheduled recalculation trigger and health check.
"""

import os
import json
import hmac
import asyncio
import logging
import threading
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from tank_telemetry import __version__
from tank_telemetry.config import PipelineConfig
from tank_telemetry.exceptions import AuthorizationError, ConfigurationError
from tank_telemetry.ingestion.orchestrator import IngestionOrchestrator
from tank_telemetry.ingestion.worker import RecalculationWorker, recalculation_crashed
from tank_telemetry.models import SyncResult, SyncStatus
from tank_telemetry.monitoring.health import HealthChecker

logger = logging.getLogger(__name__)

# Errors and warnings echoed back to the caller; the full list is in the logs.
MAX_REPORTED_ISSUES = 5

HTTP_STATUS = {
    SyncStatus.SUCCESS: 200,
    SyncStatus.PARTIAL: 207,
    SyncStatus.ERROR: 400,
}

OTHER_METHODS = ['GET', 'PUT', 'PATCH', 'DELETE']

# Seconds between client-disconnect checks while a batch is being processed.
DISCONNECT_POLL_SECONDS = 0.5

router = APIRouter()


def build_response(result: SyncResult) -> Dict[str, Any]:
    """Response body for an ingestion run."""
    if result.status == SyncStatus.SUCCESS:
        message = f"Successfully processed {result.records_succeeded} records"
    elif result.status == SyncStatus.PARTIAL:
        message = (
            f"Processed {result.records_succeeded} of {result.records_received} records "
            f"with {len(result.errors)} errors"
        )
    else:
        message = "Failed to process telemetry data"

    body = {
        'success': result.status != SyncStatus.ERROR,
        'message': message,
        'stats': {
            'locationsProcessed': result.locations_processed,
            'assetsProcessed': result.assets_processed,
            'readingsProcessed': result.readings_processed,
            'alertsTriggered': result.alerts_triggered,
            'duration': result.duration_ms,
        },
    }

    if result.errors:
        body['errors'] = [str(e) for e in result.errors[:MAX_REPORTED_ISSUES]]
    if result.warnings:
        body['warnings'] = [str(w) for w in result.warnings[:MAX_REPORTED_ISSUES]]

    return body


def _failure(status_code: int, message: str, error: Optional[str] = None, headers=None) -> JSONResponse:
    body = {'success': False, 'message': message}
    if error:
        body['error'] = error
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get('authorization')
    if not header or not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):]


def _matches(candidate: Optional[str], secret: Optional[str]) -> bool:
    if not candidate or not secret:
        return False
    return hmac.compare_digest(candidate.encode('utf-8'), secret.encode('utf-8'))


def authorize_webhook(request: Request, config: PipelineConfig) -> None:
    secret = config.require_webhook_secret()
    if not _matches(_bearer_token(request), secret):
        raise AuthorizationError("Invalid or missing webhook token")


def authorize_cron(request: Request, config: PipelineConfig) -> None:
    """Scheduler header or a bearer token carrying the cron or API secret."""
    if not config.cron_secret and not config.api_secret:
        raise ConfigurationError("CRON_SECRET or API_SECRET environment variable is required")

    if _matches(request.headers.get('x-cron-secret'), config.cron_secret):
        return

    token = _bearer_token(request)
    if _matches(token, config.cron_secret) or _matches(token, config.api_secret):
        return

    raise AuthorizationError("Invalid or missing scheduler credentials")


def get_orchestrator(app: FastAPI) -> IngestionOrchestrator:
    with app.state.lock:
        if app.state.orchestrator is None:
            app.state.orchestrator = IngestionOrchestrator.from_config(app.state.config)
        return app.state.orchestrator


async def _process_until_done(request: Request, orchestrator: IngestionOrchestrator, payload: Any) -> SyncResult:
    """Run the batch off the event loop; a client disconnect stops new dispatches."""
    cancel_event = threading.Event()
    task = asyncio.ensure_future(run_in_threadpool(orchestrator.process, payload, 'webhook', cancel_event))

    while not task.done():
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
        if not done and not cancel_event.is_set() and await request.is_disconnected():
            logger.warning("Webhook client disconnected; cancelling remaining records")
            cancel_event.set()

    return await task


@router.post('/api/gasbot-webhook')
async def gasbot_webhook(request: Request):
    config: PipelineConfig = request.app.state.config

    try:
        authorize_webhook(request, config)
    except ConfigurationError as e:
        logger.error(f"Webhook misconfigured: {e}")
        return _failure(500, "Server configuration error", str(e))
    except AuthorizationError as e:
        logger.warning(f"Webhook rejected: {e}")
        return _failure(401, "Unauthorized")

    raw_body = await request.body()
    if not raw_body.strip():
        return _failure(400, "Empty request body")

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        return _failure(400, "Invalid JSON payload", str(e))

    try:
        orchestrator = get_orchestrator(request.app)
        result = await _process_until_done(request, orchestrator, payload)
    except ConfigurationError as e:
        logger.error(f"Webhook misconfigured: {e}")
        return _failure(500, "Server configuration error", str(e))
    except Exception as e:
        logger.exception(f"Webhook processing crashed: {e}")
        return _failure(500, "Internal server error", str(e))

    return JSONResponse(status_code=HTTP_STATUS[result.status], content=build_response(result))


@router.api_route('/api/gasbot-webhook', methods=OTHER_METHODS, include_in_schema=False)
async def gasbot_webhook_wrong_method(request: Request):
    return _failure(405, f"Method {request.method} not allowed", headers={'Allow': 'POST'})


@router.api_route('/api/cron/recalculate-consumption', methods=['GET', 'POST'])
async def recalculate_consumption(request: Request):
    config: PipelineConfig = request.app.state.config

    try:
        authorize_cron(request, config)
    except ConfigurationError as e:
        logger.error(f"Scheduler endpoint misconfigured: {e}")
        return _failure(500, "Server configuration error", str(e))
    except AuthorizationError as e:
        logger.warning(f"Scheduled recalculation rejected: {e}")
        return _failure(401, "Unauthorized")

    try:
        worker = RecalculationWorker(config, orchestrator=get_orchestrator(request.app))
        result = await run_in_threadpool(worker.run_once)
    except ConfigurationError as e:
        return _failure(500, "Server configuration error", str(e))

    if recalculation_crashed(result):
        return _failure(500, "Consumption recalculation failed", str(result.errors[0]))

    body = {
        'success': True,
        'message': f"Recalculated consumption for {result.records_succeeded} assets",
        'status': result.status.value,
        'stats': {
            'processed': result.records_received,
            'updated': result.records_succeeded,
            'failed': result.records_received - result.records_succeeded,
            'alertsTriggered': result.alerts_triggered,
            'duration': result.duration_ms,
        },
    }
    if result.errors:
        body['errors'] = [str(e) for e in result.errors[:MAX_REPORTED_ISSUES]]
    if result.warnings:
        body['warnings'] = [str(w) for w in result.warnings[:MAX_REPORTED_ISSUES]]

    return JSONResponse(status_code=200, content=body)


@router.get('/health')
async def health(request: Request):
    try:
        orchestrator = get_orchestrator(request.app)
    except ConfigurationError as e:
        return _failure(503, "Store not configured", str(e))

    checker = HealthChecker(orchestrator.db, orchestrator.sync_log)
    result = await run_in_threadpool(checker.comprehensive_health_check)
    status_code = 200 if result['overall_status'] == 'healthy' else 503
    return JSONResponse(status_code=status_code, content=json.loads(json.dumps(result, default=str)))


def create_app(
    config: Optional[PipelineConfig] = None,
    orchestrator: Optional[IngestionOrchestrator] = None
) -> FastAPI:
    """Build the ASGI application; the store is opened on first use."""
    app = FastAPI(
        title="Tank Telemetry Pipeline",
        version=__version__,
        description="Telemetry webhook ingestion and consumption analytics"
    )

    app.state.config = config or PipelineConfig.from_env()
    app.state.orchestrator = orchestrator
    app.state.lock = threading.Lock()

    app.include_router(router, tags=["Telemetry"])

    return app


def main():
    """Serve the API with uvicorn."""
    import uvicorn

    from tank_telemetry.monitoring.logger_config import IngestionLogger

    IngestionLogger.setup_logging()

    uvicorn.run(
        create_app(),
        host=os.getenv('API_HOST', '0.0.0.0'),
        port=int(os.getenv('API_PORT', '8000')),
        log_config=None
    )


if __name__ == "__main__":
    main()
