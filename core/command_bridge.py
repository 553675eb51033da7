"""
File-based operator command channel for the trading agent.

An operator (or a wrapper script) writes one command line to the command
file, e.g.

    echo "switch-strategy basic" > .agent-command
    echo "confirm-panic" > .agent-command

The bridge polls for the file, removes it, submits the command to the
agent's inbox and writes the CommandResult as JSON to the result file.
Extra tokens are passed as parameters, either `key=value` or positional
for commands that take a single argument.

Usage:
    bridge = CommandBridge(agent)
    asyncio.create_task(bridge.run())
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.serialization_utils import DecimalEncoder
from shared.types import CommandResult

if TYPE_CHECKING:
    from core.agent import TradingAgent

_PROJECT_ROOT = Path(__file__).parent.parent

# Commands whose positional arguments map onto named parameters
_POSITIONAL_PARAMS: dict[str, tuple[str, ...]] = {
    "switch-strategy": ("name",),
    "pnl": ("days",),
}


def parse_command(line: str) -> tuple[str, dict[str, Any]]:
    """Split a command line into (command, params)."""
    tokens = line.split()
    if not tokens:
        raise ValueError("Empty command")
    command, args = tokens[0].lower(), tokens[1:]

    params: dict[str, Any] = {}
    positional = list(_POSITIONAL_PARAMS.get(command, ()))
    for arg in args:
        if "=" in arg:
            key, _, value = arg.partition("=")
            params[key.replace("-", "_")] = value
        elif positional:
            params[positional.pop(0)] = arg
        else:
            raise ValueError(f"Unexpected argument {arg!r} for {command}")
    return command, params


class CommandBridge:
    """Polls the command file and relays commands to the agent."""

    def __init__(
        self,
        agent: TradingAgent,
        command_path: str | Path | None = None,
        result_path: str | Path | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._agent = agent
        bridge_cfg = get_config().get_app_config().get("command_bridge", {})

        self._command_path = Path(
            command_path or _PROJECT_ROOT / bridge_cfg.get("command_file", ".agent-command")
        )
        self._result_path = Path(
            result_path
            or _PROJECT_ROOT / bridge_cfg.get("result_file", ".agent-command-result.json")
        )
        self._poll_interval: float = (
            poll_interval
            if poll_interval is not None
            else bridge_cfg.get("poll_interval_seconds", 2)
        )
        self._running = False

        self._logger = setup_module_logger(
            "command_bridge",
            "command_bridge.jsonl",
            module_folder="Command_Bridge_Logs",
            use_json_formatter=True,
        )

    @property
    def command_path(self) -> Path:
        return self._command_path

    @property
    def result_path(self) -> Path:
        return self._result_path

    async def run(self) -> None:
        """Poll loop - designed to be launched as an asyncio.Task."""
        self._running = True
        self._logger.info("Command bridge watching %s", self._command_path)

        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.error("Command bridge error: %s", exc, exc_info=True)
            await asyncio.sleep(self._poll_interval)

    def stop(self) -> None:
        self._running = False

    async def poll_once(self) -> CommandResult | None:
        """Process the pending command file, if any."""
        if not self._command_path.exists():
            return None

        line = self._command_path.read_text(encoding="utf-8").strip()
        self._command_path.unlink(missing_ok=True)

        try:
            command, params = parse_command(line)
        except ValueError as exc:
            result = CommandResult(line or "<empty>", False, str(exc))
        else:
            self._logger.info("Relaying command: %s %s", command, params or "")
            result = await self._agent.submit(command, **params)

        self._write_result(result)
        return result

    def _write_result(self, result: CommandResult) -> None:
        payload = {
            "command": result.command,
            "success": result.success,
            "message": result.message,
            "data": result.data,
            "timestamp": time.time(),
        }
        tmp_path = self._result_path.with_suffix(self._result_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, cls=DecimalEncoder, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._result_path)
        self._logger.info(
            "Command %s -> %s: %s",
            result.command,
            "ok" if result.success else "failed",
            result.message,
            extra={"command": result.command},
        )
