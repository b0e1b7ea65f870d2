# tool_dispatch.py

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional

from arg_validator import validate_arguments
from jsonrpc import METHOD_NOT_FOUND, ProtocolError, describe_exception, internal_error
from observability import Observability
from tool_registry import ToolEntry, manifest


class ToolDispatcher:
    """validate -> execute -> translate, for one tools/call at a time.

    Whatever the handler does, dispatch() either returns the tool payload or
    raises a ProtocolError; the engine never sees any other exception type
    (cancellation excepted).
    """

    def __init__(
        self,
        table: Mapping[str, ToolEntry],
        obs: Optional[Observability] = None,
        timeout_s: Optional[float] = 30.0,
    ) -> None:
        self._table = table
        self._obs = (obs or Observability()).child("dispatch")
        self._timeout_s = float(timeout_s) if timeout_s else None

    @property
    def tool_names(self) -> List[str]:
        return list(self._table.keys())

    def manifest(self) -> List[Dict[str, Any]]:
        return manifest(self._table)

    async def dispatch(self, tool_name: str, args: Any) -> Any:
        self._obs.info(f"Executing tool: {tool_name}", tool=tool_name)
        self._obs.increment(f"tool_execution_{tool_name}")

        status = "error"
        try:
            with self._obs.measure(f"execute_tool_{tool_name}"):
                entry = self._table.get(tool_name)
                if entry is None:
                    self._obs.warning(f"Unknown tool: {tool_name}")
                    self._obs.increment("unknown_tool_errors")
                    raise ProtocolError(METHOD_NOT_FOUND, f"Unknown tool: {tool_name}")
                try:
                    validated = validate_arguments(args, entry.descriptor.schema)
                except ProtocolError:
                    self._obs.increment(f"invalid_params_{tool_name}")
                    raise
                result = await self._run(tool_name, entry, validated)
            status = "ok"
            return result
        except asyncio.CancelledError:
            status = "cancelled"
            raise
        finally:
            self._obs.info(f"Tool finished: {tool_name}", tool=tool_name, status=status)

    async def _run(self, tool_name: str, entry: ToolEntry, args: Dict[str, Any]) -> Any:
        try:
            if self._timeout_s is None:
                return await entry.handler(args)
            return await asyncio.wait_for(entry.handler(args), timeout=self._timeout_s)
        except ProtocolError:
            raise
        except asyncio.TimeoutError as e:
            self._obs.error(f"Tool timed out: {tool_name}", tool=tool_name, timeout_s=self._timeout_s)
            self._obs.increment("tool_timeouts")
            raise internal_error(
                f"Tool call timed out after {self._timeout_s}s: {tool_name}",
                {
                    "type": "TimeoutError",
                    "timeout_s": self._timeout_s,
                    "detail": "The backend operation may still have been applied.",
                },
            ) from e
        except Exception as e:
            self._obs.error(f"Tool error in {tool_name}: {e}", exc_info=True, tool=tool_name)
            self._obs.increment("tool_internal_errors")
            raise internal_error(f"Tool error: {tool_name}", describe_exception(e)) from e
