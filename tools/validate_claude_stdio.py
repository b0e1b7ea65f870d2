"""Validate the Claude Desktop MCP method surface over STDIO.

This simulates what Claude Desktop does (initialize -> tools/list -> tools/call).
Needs working credentials (config.json or GHOME_* env) for the list_smart_plugs call.

Usage:
    python tools/validate_claude_stdio.py
"""

from __future__ import annotations

import json
import os
import subprocess
import sys

EXPECTED_TOOLS = {"list_smart_plugs", "control_smart_plug", "get_smart_plug_state"}


def main() -> int:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    server_py = os.path.join(repo_root, "claude_stdio_server.py")

    # Run unbuffered to better match Claude Desktop behavior on Windows.
    cmd = [sys.executable, "-u", server_py]
    requests = [
        {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {"protocolVersion": "2024-11-05", "capabilities": {}, "clientInfo": {"name": "validator"}},
        },
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        {"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {}},
        {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "list_smart_plugs", "arguments": {}}},
        {
            "jsonrpc": "2.0",
            "id": 4,
            "method": "tools/call",
            "params": {"name": "control_smart_plug", "arguments": {"deviceId": "validator-plug"}},
        },
        {"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {"name": "no_such_tool", "arguments": {}}},
    ]
    input_text = "\n".join(json.dumps(r) for r in requests) + "\n"

    env = os.environ.copy()
    env.setdefault("GHOME_LOG_LEVEL", "WARNING")

    proc = subprocess.Popen(
        cmd,
        cwd=repo_root,
        env=env,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )

    try:
        stdout, stderr = proc.communicate(input=input_text, timeout=35)
        responses = {}
        for line in (stdout or "").splitlines():
            try:
                msg = json.loads(line)
            except json.JSONDecodeError:
                raise RuntimeError(f"non-JSON line on stdout: {line!r}") from None
            if isinstance(msg, dict) and "id" in msg:
                responses[msg["id"]] = msg

        if 1 not in responses or "error" in responses[1]:
            raise RuntimeError(f"initialize failed: {responses.get(1)}\n{stderr}")
        if 2 not in responses or "error" in responses[2]:
            raise RuntimeError(f"tools/list failed: {responses.get(2)}\n{stderr}")

        tools = (responses[2].get("result") or {}).get("tools") or []
        names = {t.get("name") for t in tools if isinstance(t, dict)}
        if names != EXPECTED_TOOLS:
            raise RuntimeError(f"tools/list returned {sorted(names)}, expected {sorted(EXPECTED_TOOLS)}")

        if 3 not in responses or "error" in responses[3]:
            raise RuntimeError(f"tools/call list_smart_plugs failed: {responses.get(3)}\n{stderr}")
        plugs = (responses[3].get("result") or {}).get("content")
        if not isinstance(plugs, list):
            raise RuntimeError(f"list_smart_plugs did not return a list: {responses[3]}")

        # Missing `state` must be rejected before anything reaches the vendor.
        if (responses.get(4) or {}).get("error", {}).get("code") != -32602:
            raise RuntimeError(f"expected InvalidParams for id=4, got {responses.get(4)}")
        if (responses.get(5) or {}).get("error", {}).get("code") != -32601:
            raise RuntimeError(f"expected MethodNotFound for id=5, got {responses.get(5)}")

        if proc.returncode != 0:
            raise RuntimeError(f"server exited with rc={proc.returncode}\n{stderr}")

        print(f"OK: Claude-style initialize/tools/list/tools/call works ({len(plugs)} plugs)")
        return 0

    except Exception as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
