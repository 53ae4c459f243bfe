from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Optional
from datetime import datetime
import structlog
import uvicorn
from pydantic import ValidationError

from .connection_manager import MonitorConnectionManager
from .dispatch import AgentDispatcher
from .schema.events import (
    CommandType, LogsEvent, MonitorCommand, ResultsData, ResultsEvent,
    StateData, StateUpdateEvent
)
from lm_dispatch.config import get_settings
from lm_dispatch.domain.exceptions import ConversationNotFound
from lm_dispatch.infrastructure.observability.dispatch_logging import clear_log, get_output_channel
from lm_dispatch.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


async def build_results_data(dispatcher: AgentDispatcher, conversation_id: int) -> ResultsData:
    """Summarize a conversation's result for display"""

    conversation = await dispatcher.get_conversation(conversation_id)
    if conversation is None:
        raise ConversationNotFound(conversation_id)

    result = dispatcher.get_result(conversation_id)
    if result is None:
        return ResultsData(id=conversation_id, error_message=conversation.error_message)

    return ResultsData(
        id=conversation_id,
        reason=result.reason.value,
        error_message=result.error_message,
        final_text=result.final_text,
        assistant_turns=result.assistant_turns,
        history_length=len(result.history),
    )


def create_monitor_app(
    dispatcher: AgentDispatcher,
    connection_manager: Optional[MonitorConnectionManager] = None,
) -> FastAPI:
    """Monitor API: conversation state over HTTP plus live websocket updates"""

    app = FastAPI(title="Agent Dispatch Monitor")
    manager = connection_manager or MonitorConnectionManager()
    app.state.dispatcher = dispatcher
    app.state.connection_manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def state_update_event() -> StateUpdateEvent:
        return StateUpdateEvent(data=StateData(conversations=await dispatcher.snapshot()))

    async def broadcast_state():
        if manager.active_connections:
            await manager.broadcast(await state_update_event())

    dispatcher.add_refresh_hook(broadcast_state)

    @app.exception_handler(ConversationNotFound)
    async def conversation_not_found_handler(request: Request, exc: ConversationNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown"""
        dispatcher.remove_refresh_hook(broadcast_state)
        await manager.disconnect_all()
        logger.info("Monitor server shutdown")

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        conversations = await dispatcher.registry.get_all()
        return {
            "status": "healthy",
            "conversations": len(conversations),
            "running": len(dispatcher.tasks),
            "active_connections": len(manager.active_connections),
            "timestamp": datetime.utcnow().isoformat()
        }

    @app.get("/conversations")
    async def list_conversations():
        return await dispatcher.snapshot()

    @app.get("/conversations/{conversation_id}")
    async def get_conversation(conversation_id: int):
        conversation = await dispatcher.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation.model_dump(mode="json")

    @app.get("/conversations/{conversation_id}/results")
    async def get_results(conversation_id: int):
        results = await build_results_data(dispatcher, conversation_id)
        return results.model_dump(mode="json")

    @app.post("/conversations/{conversation_id}/cancel")
    async def cancel_conversation(conversation_id: int):
        if not await dispatcher.cancel(conversation_id):
            raise ConversationNotFound(conversation_id)
        return {"id": conversation_id, "cancelled": True}

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: int):
        if not await dispatcher.delete(conversation_id):
            raise ConversationNotFound(conversation_id)
        return {"id": conversation_id, "deleted": True}

    @app.get("/logs")
    async def get_logs():
        return {"lines": get_output_channel().lines()}

    @app.delete("/logs")
    async def delete_logs():
        clear_log()
        return {"cleared": True}

    @app.websocket("/ws/monitor")
    async def monitor_websocket(websocket: WebSocket):
        """Live monitor: initial snapshot, then pushes on every change"""

        client_id = await manager.connect(websocket)

        try:
            await manager.send_event(client_id, await state_update_event())

            while True:
                data = await websocket.receive_json()

                try:
                    command = MonitorCommand.model_validate(data)
                except ValidationError as e:
                    logger.warning("Invalid monitor command", client_id=client_id, error=str(e))
                    await manager.send_error(client_id, f"Invalid command: {data.get('type') if isinstance(data, dict) else data}")
                    continue

                await handle_command(client_id, command)

        except WebSocketDisconnect:
            logger.info("Monitor client disconnected", client_id=client_id)
        finally:
            await manager.disconnect(client_id)

    async def handle_command(client_id: int, command: MonitorCommand):
        """Route a monitor command to the dispatcher"""

        conversation_id = command.data.id

        if command.type == CommandType.SHOW_LOGS:
            await manager.send_event(client_id, LogsEvent(data=get_output_channel().lines()))
            return

        if conversation_id is None:
            await manager.send_error(client_id, f"Command {command.type.value} requires a conversation id")
            return

        try:
            if command.type == CommandType.CANCEL_CONVERSATION:
                if not await dispatcher.cancel(conversation_id):
                    raise ConversationNotFound(conversation_id)
            elif command.type == CommandType.DELETE_CONVERSATION:
                if not await dispatcher.delete(conversation_id):
                    raise ConversationNotFound(conversation_id)
            elif command.type == CommandType.SHOW_RESULTS:
                results = await build_results_data(dispatcher, conversation_id)
                await manager.send_event(client_id, ResultsEvent(data=results))
        except ConversationNotFound as e:
            await manager.send_error(client_id, str(e), error_code="not_found")

    return app


async def serve_monitor(dispatcher: AgentDispatcher, host: Optional[str] = None, port: Optional[int] = None):
    """Serve the monitor on the running event loop, next to the conversations"""

    settings = get_settings()
    setup_logging()
    app = create_monitor_app(dispatcher)
    config = uvicorn.Config(
        app,
        host=host or settings.monitor_host,
        port=port or settings.monitor_port,
        log_config=None,
    )
    server = uvicorn.Server(config)
    logger.info("Monitor server starting", host=config.host, port=config.port)
    await server.serve()
