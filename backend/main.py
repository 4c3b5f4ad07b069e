"""
FormPilot — FastAPI application entrypoint.

Start the server:
    uvicorn main:app --reload --port 8000

API Overview:
    GET    /api/health                                            — Health check
    POST   /api/forms/{form_id}/session                           — Open a build session
    GET    /api/forms/{form_id}/document                          — Current document and selection
    POST   /api/forms/{form_id}/commands                          — Apply a batch of commands
    PUT    /api/forms/{form_id}/selection                         — Set the canvas selection
    GET    /api/forms/{form_id}/chat/messages                     — Chat history
    POST   /api/forms/{form_id}/chat                              — Send a message to the assistant
    POST   /api/forms/{form_id}/chat/stop                         — Stop the assistant
    DELETE /api/forms/{form_id}/chat                              — Clear the chat
    POST   /api/forms/{form_id}/chat/messages/{message_id}/apply  — Apply an assistant message
    POST   /api/forms/{form_id}/chat/messages/{message_id}/deny   — Reject an assistant message
    GET    /api/forms/{form_id}/workflow                          — Build workflow state
    POST   /api/forms/{form_id}/workflow/continue                 — Move to the next stage
    WS     /ws/forms/{form_id}                                    — Real-time session events
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from api.routes import router
from api.websocket import ws_router
from database import init_db, close_db

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    logger.info("FormPilot API starting up...")
    await init_db()
    logger.info("Database initialized.")
    yield
    await close_db()
    logger.info("FormPilot API shutting down...")


app = FastAPI(
    title="FormPilot API",
    description=(
        "Backend for the FormPilot AI form builder. Applies assistant and "
        "user edits to form documents, guides the assistant through the "
        "build workflow and streams session status via WebSockets."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

# CORS — allow all origins in development; tighten in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount REST routes under /api prefix
app.include_router(router, prefix="/api")

# Mount WebSocket routes (no prefix — path is /ws/forms/{form_id})
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
