#!/usr/bin/env python3
"""
Inference Queue Runtime
Serves one MLX engine to many callers via JSON-RPC over stdio

This runtime is a thin transport around InferenceService:
- Composes config, telemetry, engine and service at startup
- Validates request parameters (the service passes them through untouched)
- Dispatches each request as its own task so slow completions don't block reads
"""

import asyncio
import logging
import sys
from typing import Any, Dict, Optional

import orjson

from config_loader import Config, get_config, initialize_config
from errors import ServiceError, ERROR_CODE_MAP
from models.engine import EngineHandle, MLXEngine
from service import InferenceService
from telemetry import RuntimeTelemetry
import validators

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def configure_logging(config: Config) -> None:
    """Route runtime logs to stderr (stdout carries JSON-RPC)"""
    level = logging.DEBUG if config.debug else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=config.log_format,
        datefmt=config.log_datefmt,
        stream=sys.stderr,
    )


class RuntimeServer:
    """JSON-RPC front end over a single InferenceService"""

    def __init__(self, service: InferenceService, config: Optional[Config] = None):
        self.config = config or get_config()
        self.service = service
        self.shutdown_requested: bool = False
        self.request_tasks: set = set()
        self.init_task: Optional[asyncio.Task] = None

    def _write(self, payload: Dict[str, Any]) -> None:
        print(orjson.dumps(payload).decode("utf-8"), flush=True)

    def _serialize_error(self, exc: Exception) -> Dict[str, Any]:
        """Translate Python exceptions to JSON-RPC error objects"""
        if isinstance(exc, ServiceError):
            code = ERROR_CODE_MAP.get(type(exc), -32099)
            data = {"model_id": exc.model_id, "type": type(exc).__name__}
            return {"code": code, "message": exc.message, "data": data}
        elif isinstance(exc, ValueError):
            # Validation messages are safe to expose
            logger.warning(f"Validation error: {exc}")
            return {
                "code": -32602,  # Invalid params (JSON-RPC standard)
                "message": str(exc),
                "data": {"type": "ValidationError"},
            }
        else:
            # Generic error to prevent leaking sensitive information
            logger.error(f"Unexpected error in runtime: {type(exc).__name__}: {exc}")
            return {
                "code": -32099,
                "message": "An unexpected internal error occurred",
                "data": {"type": "InternalError"},
            }

    async def start(self) -> None:
        """Kick off engine loading in the background; requests queue meanwhile."""
        self.init_task = asyncio.create_task(self._initialize_service())

    async def _initialize_service(self) -> None:
        try:
            await self.service.initialize()
        except ServiceError as exc:
            # Recorded on the service; runtime/state reports it
            logger.error(f"Engine initialization failed: {exc.message}")

    async def handle_request(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Handle incoming JSON-RPC request or notification

        Returns:
            Response dict for requests (with id), None for notifications (without id)
        """
        method = request.get("method")
        params = request.get("params") or {}
        req_id = request.get("id")
        is_notification = "id" not in request

        try:
            if not isinstance(params, dict):
                raise ValueError("params must be an object")

            if method == "runtime/info":
                result = self.get_runtime_info()
            elif method == "runtime/state":
                result = self.service.get_state()
            elif method == "runtime/telemetry":
                result = self.get_telemetry_report()
            elif method == "complete":
                result = await self.complete(params, structured=True)
            elif method == "complete_text":
                result = await self.complete(params, structured=False)
            elif method == "embed":
                result = await self.embed(params)
            elif method == "shutdown":
                result = await self.shutdown()
            else:
                raise ValueError(f"Unknown method: {method}")

            if is_notification:
                return None

            return {"jsonrpc": "2.0", "id": req_id, "result": result}

        except Exception as exc:
            error_obj = self._serialize_error(exc)

            if is_notification:
                logger.warning(f"Error in notification {method}: {exc}")
                return None

            return {"jsonrpc": "2.0", "id": req_id, "error": error_obj}

    def get_runtime_info(self) -> Dict[str, Any]:
        """Return runtime version, capabilities, process memory and model metadata"""
        try:
            import psutil

            mem_info = psutil.Process().memory_info()
            memory = {"rss": mem_info.rss, "vms": mem_info.vms}
        except ImportError:
            memory = {"rss": 0, "vms": 0}

        return {
            "version": VERSION,
            "protocol": "json-rpc-2.0",
            "model_id": self.service.model_id,
            "ready": self.service.is_ready(),
            "capabilities": [
                "complete",
                "complete_text",
                "embed",
                "runtime/state",
                "runtime/telemetry",
            ],
            "memory": memory,
            "model": getattr(self.service.engine, "metadata", {}),
        }

    def get_telemetry_report(self) -> Dict[str, Any]:
        if self.service.telemetry is None:
            return {"enabled": False}
        return self.service.telemetry.get_report()

    async def complete(self, params: Dict[str, Any], structured: bool) -> Dict[str, Any]:
        """Queue a completion; validated and enqueued before the first await."""
        validators.validate_completion_params(params)

        args = (
            params["context"],
            params.get("temperature", 0.7),
            params.get("stop") or [],
            params.get("frequency_penalty", 0.0),
            params.get("presence_penalty", 0.0),
            params.get("max_tokens", self.config.default_max_tokens),
        )
        if structured:
            future = self.service.submit_completion(*args)
        else:
            future = self.service.submit_text(*args)

        value = await future
        return {"mode": "structured" if structured else "text", "value": value}

    async def embed(self, params: Dict[str, Any]) -> Dict[str, Any]:
        validators.validate_embedding_params(params)
        vector = await self.service.embed(params["input"])
        return {
            "embedding": vector,
            "dimensions": len(vector) if vector is not None else 0,
        }

    async def shutdown(self) -> Dict[str, Any]:
        """Stop reading; pending completions are reported before exit."""
        self.shutdown_requested = True
        pending = len(self.service.queue)
        if pending:
            logger.warning(f"Shutdown requested with {pending} queued request(s)")
        return {"success": True, "pending": pending}

    async def _respond(self, request: Dict[str, Any]) -> None:
        response = await self.handle_request(request)
        if response is not None:
            self._write(response)

    def dispatch(self, request: Dict[str, Any]) -> asyncio.Task:
        """Schedule a request; tasks start in arrival order, preserving queue order."""
        task = asyncio.create_task(self._respond(request))
        self.request_tasks.add(task)
        task.add_done_callback(self.request_tasks.discard)
        return task

    async def run(self) -> None:
        """Read newline-delimited JSON-RPC from stdin until EOF or shutdown"""
        await self.start()

        buffer = ""
        max_buffer_size = self.config.max_buffer_size
        loop = asyncio.get_running_loop()

        while not self.shutdown_requested:
            try:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break

                # Check size BEFORE concatenation to prevent temporary overflow
                if len(buffer.encode("utf-8")) + len(line.encode("utf-8")) > max_buffer_size:
                    self._write({
                        "jsonrpc": "2.0",
                        "id": None,
                        "error": {
                            "code": -32600,  # Invalid Request
                            "message": f"Buffer overflow: would exceed {max_buffer_size} bytes",
                        },
                    })
                    buffer = ""
                    continue

                buffer += line

                try:
                    request = orjson.loads(buffer)
                except orjson.JSONDecodeError:
                    # Incomplete message, continue reading
                    continue

                buffer = ""
                if not isinstance(request, dict):
                    raise ValueError("JSON-RPC payload must be an object")

                if request.get("method") == "shutdown":
                    # Handle inline so the loop observes the flag
                    await self._respond(request)
                else:
                    self.dispatch(request)

            except Exception as e:
                logger.error(f"Parse error in runtime loop: {type(e).__name__}: {e}")
                self._write({
                    "jsonrpc": "2.0",
                    "id": None,
                    "error": {"code": -32700, "message": f"Parse error: {str(e)}"},
                })
                buffer = ""

        await self._finish_outstanding()

    async def _finish_outstanding(self) -> None:
        """Let queued requests finish if the engine loaded, otherwise drop them, then unload."""
        if self.init_task is not None:
            await asyncio.gather(self.init_task, return_exceptions=True)

        tasks = list(self.request_tasks)
        if tasks and not self.service.is_ready():
            # Requests queued behind an engine that never loaded would wait forever
            logger.warning(f"Dropping {len(tasks)} request(s) queued behind an unloaded engine")
            for task in tasks:
                task.cancel()

        await asyncio.gather(*tasks, return_exceptions=True)

        unload = getattr(self.service.engine, "unload", None)
        if unload is not None:
            unload()


def build_service(config: Config, engine: Optional[EngineHandle] = None) -> InferenceService:
    """Compose the service from config; pass an engine to override MLX."""
    telemetry = RuntimeTelemetry(
        enabled=config.telemetry_enabled,
        sampling_rate=config.telemetry_sampling_rate,
    )
    return InferenceService(engine or MLXEngine.from_config(config), telemetry=telemetry)


def main():
    """Entry point"""
    config = initialize_config()
    configure_logging(config)

    server = RuntimeServer(build_service(config), config)
    logger.info("Inference queue runtime ready")
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
