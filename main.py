from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from dotenv import load_dotenv
import os
import sys
import logging
from middleware.webhook_auth import is_signature_verification_configured
from services.credential_provider import reset_credential_providers
from services.pipeline_runner import PipelineRunner, get_pipeline_runner, shutdown_pipeline_runner
from routers import webhooks

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Validate required environment variables
REQUIRED_ENV_VARS = [
    "VONAGE_APPLICATION_ID",
    "VONAGE_PRIVATE_KEY",
    "GRAPH_TENANT_ID",
    "GRAPH_CLIENT_ID",
    "GRAPH_CLIENT_SECRET",
    "ONEDRIVE_USER_ID",
]

def validate_environment():
    """Validate that all required environment variables are set."""
    missing = [var for var in REQUIRED_ENV_VARS if not os.getenv(var)]
    if missing:
        logger.error(f"Missing required environment variables: {missing}")
        sys.exit(1)
    logger.info("Environment validation passed")

def log_integration_status():
    """
    Log which optional integrations are enabled.

    None of these are required; the pipeline runs without them.
    """
    logger.info("=" * 60)
    logger.info(f"  OneDrive folder: {os.getenv('ONEDRIVE_UPLOAD_FOLDER', 'CallRecordings')}")
    logger.info(f"  MCP server: {os.getenv('MCP_SERVER_URL', 'http://localhost:5000/mcp/')}")
    logger.info(f"  MCP timeout: {os.getenv('MCP_TIMEOUT_SECONDS', '300')}s (0 = unbounded)")

    if is_signature_verification_configured():
        logger.info("  Webhook signature verification ENABLED")
    else:
        logger.warning("  Webhook signature verification DISABLED (VONAGE_SIGNATURE_SECRET not set)")

    if os.getenv("NOTIFICATIONS_ENABLED", "true").strip().lower() in ("1", "true", "yes", "on"):
        if os.getenv("VONAGE_FROM_NUMBER"):
            logger.info(f"  SMS notifications ENABLED (from={os.getenv('VONAGE_FROM_NUMBER')})")
        else:
            logger.warning("  SMS notifications will fail: VONAGE_FROM_NUMBER not set")
    else:
        logger.info("  SMS notifications DISABLED")

    if os.getenv("WEBHOOK_DEDUP_ENABLED", "false").strip().lower() in ("1", "true", "yes", "on"):
        logger.info(f"  Webhook deduplication ENABLED (redis={os.getenv('REDIS_URL', 'redis://localhost:6379')})")
    else:
        logger.info("  Webhook deduplication DISABLED")
    logger.info("=" * 60)

# Call validation at startup
validate_environment()
log_integration_status()


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_pipeline_runner()
    logger.info("Call artifact pipeline ready")
    yield
    await shutdown_pipeline_runner()
    reset_credential_providers()
    logger.info("Call artifact pipeline stopped")


app = FastAPI(title="Call Artifact Pipeline", lifespan=lifespan)

# Include routers
app.include_router(webhooks.router)


@app.get("/health")
async def health(runner: PipelineRunner = Depends(get_pipeline_runner)):
    return {"status": "ok", "active_pipelines": runner.active_count}
