"""FastAPI tool service.

Serves a ToolSet over HTTP so that tools can live in their own process:
- GET  /v1/tools          -> call specs (OpenAI `tools` format)
- POST /v1/tools/{name}   -> validate arguments and run the tool

Important:
- The service validates inputs with the same schemas the chain uses
- Invalid arguments come back as 422 with the same error payload the model sees
- Can be protected with auth, mTLS, or an API gateway in real deployments
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import Body, FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from aichain.errors import RetryableError
from aichain.functions import ToolSet
from aichain.repair import build_tool_error_payload


def create_tool_app(tool_set: ToolSet, *, title: str = 'Tool Service') -> FastAPI:
    """Build a FastAPI app exposing every tool in `tool_set`."""
    app = FastAPI(title=title, version='1.0.0')
    app.state.tool_set = tool_set

    @app.get('/v1/tools')
    async def list_tools() -> list[dict[str, Any]]:
        return tool_set.tool_specs()

    @app.post('/v1/tools/{name}')
    async def invoke_tool(name: str, arguments: dict[str, Any] = Body(...)) -> JSONResponse:
        binding = tool_set.get(name)
        if binding is None:
            return JSONResponse(
                status_code=404,
                content={'error': {'kind': 'unknown_tool', 'message': f'Unknown tool: {name}'}},
            )
        try:
            result = await binding.invoke(json.dumps(arguments))
        except RetryableError as exc:
            return JSONResponse(status_code=422, content=build_tool_error_payload(exc))
        return JSONResponse(status_code=200, content=jsonable_encoder(result))

    return app
