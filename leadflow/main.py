from fastapi import FastAPI

from leadflow.config import settings
from leadflow.logging_config import setup_logging
from leadflow.routers import admin, dispatch, webhook

setup_logging(settings.log_level)

app = FastAPI(
    title="LeadFlow API",
    description="Inbound WhatsApp pipeline and AI assistant for the LeadFlow CRM",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(dispatch.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
