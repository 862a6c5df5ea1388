"""FastAPI surface over the session lifecycle manager."""

from __future__ import annotations

import logging
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from chatbridge import __version__
from chatbridge.core.session_manager import MessageContentType, SessionLifecycleManager
from chatbridge.errors import ClientCreationFailed, SendFailed, SessionNotReady

logger = logging.getLogger(__name__)


class SendMessageRequest(BaseModel):
    """Body of a send request."""

    recipient: str
    content: str = ""
    type: MessageContentType = MessageContentType.TEXT
    media_url: str | None = None


def create_app(manager: SessionLifecycleManager) -> FastAPI:
    """Build the HTTP app for a manager.

    Args:
        manager: The lifecycle manager the routes delegate to

    Returns:
        A FastAPI application
    """
    app = FastAPI(title="chatbridge", version=__version__)
    app.state.manager = manager

    @app.post("/sessions/{session_id}", status_code=202)
    async def create_session(session_id: str) -> dict[str, Any]:
        """Create a session, or return the existing one."""
        try:
            adapter = await manager.create(session_id)
        except ClientCreationFailed as e:
            raise HTTPException(status_code=500, detail=str(e)) from e

        view = manager.get_status(session_id)
        return {
            "session_id": session_id,
            "created": adapter is not None,
            "status": view.to_dict() if view else None,
        }

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:
        """Get the status of one session."""
        view = manager.get_status(session_id)
        if view is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        return {"session_id": session_id, **view.to_dict()}

    @app.get("/sessions")
    async def list_sessions() -> dict[str, Any]:
        """List all sessions."""
        return {"sessions": [summary.to_dict() for summary in manager.list_all()]}

    @app.post("/sessions/{session_id}/messages")
    async def send_message(session_id: str, body: SendMessageRequest) -> dict[str, Any]:
        """Send a message through a connected session."""
        try:
            result = await manager.send_message(
                session_id,
                body.recipient,
                body.content,
                content_type=body.type,
                media_ref=body.media_url,
            )
        except SessionNotReady as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        except SendFailed as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return result.to_dict()

    @app.delete("/sessions/{session_id}")
    async def disconnect_session(session_id: str) -> dict[str, str]:
        """Log a session out and delete its credentials."""
        await manager.disconnect(session_id)
        return {"status": "disconnected", "session_id": session_id}

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Report manager statistics."""
        return {"status": "ok", "version": __version__, **manager.get_statistics()}

    return app


async def serve(app: FastAPI, host: str, port: int, log_level: str = "info") -> None:
    """Run the app with uvicorn until it is stopped."""
    config = uvicorn.Config(app, host=host, port=port, log_level=log_level.lower())
    server = uvicorn.Server(config)
    logger.info("Serving API on http://%s:%d", host, port)
    await server.serve()
