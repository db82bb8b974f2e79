"""HTTP-backed tools that call a remote tool service."""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel

from aichain.errors import CallTimeoutError, ParseError
from aichain.functions import ToolBinding, bind


class HttpToolExecutor:
    """Execute tools by calling an HTTP service.

    This is the pattern most companies use internally:
    - LLM chooses a tool + args
    - the chain validates the args locally
    - the internal service performs side effects (email, Slack, ticketing, etc.)
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient, timeout: float = 120.0) -> None:
        """Create an HTTP tool executor.

        Args:
            base_url: Base URL of the tool service (e.g. http://tool-svc:8001/v1/tools).
            client: Injected httpx client; the caller owns its lifecycle.
            timeout: Per-request timeout in seconds.
        """
        self._base_url = base_url.rstrip('/')
        self._client = client
        self._timeout = timeout

    async def execute(self, tool_name: str, args: dict[str, Any]) -> Any:
        """POST validated arguments to `{base_url}/{tool_name}` and return the JSON result.

        Raises:
            CallTimeoutError: If the service does not answer in time.
            ParseError: If the service rejects the arguments (422), so the model can retry.
            httpx.HTTPStatusError: For any other non-2xx response.
        """
        url = f'{self._base_url}/{tool_name}'
        try:
            resp = await self._client.post(url, json=args, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise CallTimeoutError(f'Tool service call {tool_name!r} timed out') from exc

        if resp.status_code == 422:
            raise ParseError(f'Tool service rejected arguments for {tool_name}: {resp.text}')
        resp.raise_for_status()
        return resp.json()


def http_tool(
    schema: type[BaseModel],
    description: str,
    *,
    name: str,
    executor: HttpToolExecutor,
) -> ToolBinding[Any]:
    """Bind a schema to a remote tool served over HTTP."""

    async def call_remote(params: BaseModel) -> Any:
        return await executor.execute(name, params.model_dump(mode='json'))

    return bind(schema, description, call_remote, name=name)
