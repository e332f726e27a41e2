# Simpli Immo GHL Sync - Main Application Entry Point

# Load environment variables FIRST (before any other imports that use config)
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from api.routes.webhook_routes import router as webhook_router
from api.routes.oauth_routes import router as oauth_router
from api.routes.sync_routes import router as sync_router
from api.routes.job_routes import router as job_router
from api.routes.objekt_routes import router as objekt_router
from api.routes.followup_routes import router as followup_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events"""
    logger.info("🚀 Simpli Immo GHL Sync starting up...")

    from config import AppConfig

    logger.info("🔧 Configuration Status:")
    logger.info(f"   🔑 GHL_CLIENT_ID: {'✅ Loaded' if AppConfig.GHL_CLIENT_ID else '❌ Missing'}")
    logger.info(f"   🔐 SERVICE_ROLE_KEY: {'✅ Loaded' if AppConfig.SERVICE_ROLE_KEY else '❌ Missing'}")
    logger.info(f"   🧠 LLM provider: {AppConfig.LLM_PROVIDER} ({'✅ key set' if AppConfig.llm_api_key() else '❌ no key'})")
    logger.info(f"   🗄️ Database: {AppConfig.DATABASE_URL}")

    if AppConfig.validate_config():
        logger.info("✅ All required configuration loaded successfully")
    else:
        logger.error("❌ Configuration validation failed - check environment variables")

    logger.info("✅ GHL webhook endpoint at /api/v1/webhooks/ghl")
    logger.info("✅ API documentation available at /docs")

    yield

    logger.info("🛑 Simpli Immo GHL Sync shutting down...")


app = FastAPI(
    title="Simpli Immo GHL Sync",
    description="GoHighLevel CRM sync, lead analysis and follow-up service",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook_router)
app.include_router(oauth_router)
app.include_router(sync_router)
app.include_router(job_router)
app.include_router(objekt_router)
app.include_router(followup_router)


@app.get("/health")
async def health_check():
    from config import AppConfig
    return {
        "status": "healthy",
        "service": "simpli-immo-ghl-sync",
        "version": "1.0.0",
        "security": AppConfig.get_security_config(),
    }


if __name__ == "__main__":
    import uvicorn
    from config import AppConfig

    uvicorn.run(
        "main:app",
        host=AppConfig.HOST,
        port=AppConfig.PORT,
        reload=AppConfig.DEBUG,
        log_level="info"
    )
