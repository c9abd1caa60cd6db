"""
CMON51 Debug Adapter implementation (Debug Adapter Protocol).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cmon51dbg import (
    AbnormalTerminationError,
    BaseEvent,
    DebugSession,
    EventSubscription,
    ExitedEvent,
    ProtocolMismatchError,
    REGISTER_NAMES,
    RegisterSnapshot,
    SessionConfig,
    SessionState,
    StaleSessionError,
    TransportConfig,
    TransportError,
)
from cmon51dbg.transport import CMON51_PATH_ENV


JsonDict = Dict[str, Any]
SessionFactory = Callable[[SessionConfig], DebugSession]

# The monitor runs a single program with no threads.
THREAD_ID = 1
REGISTERS_REFERENCE = 1000


class DAPProtocol:
    """Content-Length framed DAP messages over binary streams."""

    def __init__(self, reader, writer) -> None:
        self.reader = reader
        self.writer = writer
        self.seq = 1
        self._write_lock = threading.Lock()

    def send_event(self, event: str, body: Optional[JsonDict] = None) -> None:
        self._send_message({"type": "event", "event": event, "body": body or {}})

    def send_response(
        self,
        request_seq: int,
        command: str,
        *,
        success: bool = True,
        body: Optional[JsonDict] = None,
        message: Optional[str] = None,
    ) -> None:
        payload: JsonDict = {
            "type": "response",
            "request_seq": request_seq,
            "command": command,
            "success": success,
            "body": body or {},
        }
        if message:
            payload["message"] = message
        self._send_message(payload)

    def _send_message(self, message: JsonDict) -> None:
        # seq must be assigned under the lock; events come from worker threads.
        with self._write_lock:
            message = {"seq": self.seq, **message}
            self.seq += 1
            encoded = json.dumps(message).encode("utf-8")
            self.writer.write(f"Content-Length: {len(encoded)}\r\n\r\n".encode("ascii"))
            self.writer.write(encoded)
            self.writer.flush()

    def read_message(self) -> Optional[JsonDict]:
        """Read a single DAP message. Returns None on EOF."""
        content_length: Optional[int] = None
        while True:
            line = self.reader.readline()
            if not line:
                return None
            decoded = line.decode("utf-8") if isinstance(line, bytes) else line
            decoded = decoded.strip()
            if not decoded:
                break
            name, _, value = decoded.partition(":")
            if name.strip().lower() == "content-length":
                content_length = int(value.strip())
        if content_length is None:
            return None
        body = self.reader.read(content_length)
        if not body:
            return None
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return json.loads(body)


class AdapterCommandError(RuntimeError):
    """Raised when a DAP request fails for expected/user-level reasons."""


# Failures that are the user's or the monitor's doing, not adapter bugs.
EXPECTED_ERRORS = (
    AdapterCommandError,
    StaleSessionError,
    ProtocolMismatchError,
    TransportError,
    FileNotFoundError,
    ValueError,
)


class Cmon51DebugAdapter:
    """DAP request dispatcher bridging a debug client to DebugSession."""

    def __init__(
        self,
        protocol: DAPProtocol,
        *,
        session_config: Optional[SessionConfig] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.protocol = protocol
        self.logger = logging.getLogger("cmon51-dap")
        self.session_config = session_config
        self._session_factory: SessionFactory = session_factory or DebugSession
        self.session: Optional[DebugSession] = None
        self.lines_start_at1 = True
        self.registers: Optional[RegisterSnapshot] = None
        self._events_token: Optional[int] = None
        self._exit_lock = threading.Lock()
        self._exit_reported = False
        self._deferred: List[Callable[[], None]] = []
        self._worker: Optional[threading.Thread] = None

    def serve(self) -> None:
        while True:
            message = self.protocol.read_message()
            if message is None:
                self.logger.info("EOF on stdin, shutting down")
                break
            if message.get("type") != "request":
                continue
            self._handle_request(message)
        self._shutdown()

    # Request handlers -------------------------------------------------
    def _handle_request(self, request: JsonDict) -> None:
        command = request.get("command")
        seq = int(request.get("seq", 0))
        arguments = request.get("arguments") or {}
        handler = getattr(self, f"_handle_{command}", None)
        if handler is None:
            self.protocol.send_response(seq, command or "", success=False, message=f"Unsupported command: {command}")
            return
        try:
            body = handler(arguments) or {}
            self.protocol.send_response(seq, command or "", body=body)
        except EXPECTED_ERRORS as exc:
            self.logger.info("DAP command failed: %s (%s)", command, exc)
            self.protocol.send_response(seq, command or "", success=False, message=str(exc))
        except Exception as exc:  # pragma: no cover - protective
            self.logger.exception("DAP command failed: %s", command)
            self.protocol.send_response(seq, command or "", success=False, message=str(exc))
        finally:
            self._run_deferred()

    def _handle_initialize(self, args: JsonDict) -> JsonDict:
        self.lines_start_at1 = bool(args.get("linesStartAt1", True))
        capabilities = {
            "supportsConfigurationDoneRequest": True,
            "supportsSetVariable": True,
            "supportsDisassembleRequest": True,
            "supportsTerminateRequest": True,
        }
        self._start_session()
        self._defer(lambda: self.protocol.send_event("initialized", {}))
        return capabilities

    def _handle_launch(self, args: JsonDict) -> JsonDict:
        return {}

    def _handle_attach(self, args: JsonDict) -> JsonDict:
        return {}

    def _handle_configurationDone(self, args: JsonDict) -> JsonDict:  # noqa: N802
        self._schedule_run("continue_", "breakpoint")
        return {}

    def _handle_setBreakpoints(self, args: JsonDict) -> JsonDict:  # noqa: N802
        session = self._ensure_session()
        source = args.get("source") or {}
        source_path = source.get("path")
        if not source_path:
            raise AdapterCommandError("setBreakpoints requires a source path")
        if "breakpoints" in args:
            client_lines = [int(bp.get("line", 0)) for bp in args.get("breakpoints") or []]
        else:
            client_lines = [int(line) for line in args.get("lines") or []]
        lines = [self._client_to_debugger_line(line) for line in client_lines]
        self.logger.info("setBreakpoints: source=%s, count=%d", source_path, len(lines))
        placed = session.set_breakpoints(source_path, lines)
        return {
            "breakpoints": [
                {"verified": True, "line": self._debugger_to_client_line(line)} for line in placed
            ]
        }

    def _handle_threads(self, args: JsonDict) -> JsonDict:
        return {"threads": [{"id": THREAD_ID, "name": "Main thread"}]}

    def _handle_stackTrace(self, args: JsonDict) -> JsonDict:  # noqa: N802
        session = self._ensure_session()
        registers = self._current_registers()
        path = session.source_file or ""
        frame: JsonDict = {
            "id": 0,
            "name": "Default frame",
            "line": self._debugger_to_client_line(registers.line),
            "column": 0,
            "instructionPointerReference": registers.pc,
        }
        if path:
            frame["source"] = {"name": Path(path).name, "path": path}
        return {"stackFrames": [frame], "totalFrames": 1}

    def _handle_scopes(self, args: JsonDict) -> JsonDict:
        return {"scopes": [{"name": "Registers", "variablesReference": REGISTERS_REFERENCE, "expensive": False}]}

    def _handle_variables(self, args: JsonDict) -> JsonDict:
        if int(args.get("variablesReference") or 0) != REGISTERS_REFERENCE:
            return {"variables": []}
        registers = self._current_registers()
        return {
            "variables": [
                {"name": label, "value": getattr(registers, key), "variablesReference": 0}
                for key, label in REGISTER_NAMES.items()
            ]
        }

    def _handle_setVariable(self, args: JsonDict) -> JsonDict:  # noqa: N802
        session = self._ensure_session()
        name = str(args.get("name") or "")
        value = str(args.get("value") or "")
        if not name:
            raise AdapterCommandError("setVariable requires a register name")
        session.write_register(name, value)
        return {"value": value}

    def _handle_continue(self, args: JsonDict) -> JsonDict:
        self._schedule_run("continue_", "breakpoint")
        return {"allThreadsContinued": True}

    def _handle_next(self, args: JsonDict) -> JsonDict:
        self._schedule_run("next", "step")
        return {}

    def _handle_stepIn(self, args: JsonDict) -> JsonDict:  # noqa: N802
        return self._handle_next(args)

    def _handle_stepOut(self, args: JsonDict) -> JsonDict:  # noqa: N802
        return self._handle_next(args)

    def _handle_evaluate(self, args: JsonDict) -> JsonDict:
        session = self._ensure_session()
        expression = str(args.get("expression") or "")
        session.evaluate(expression)
        return {"result": "", "variablesReference": 0}

    def _handle_disassemble(self, args: JsonDict) -> JsonDict:
        session = self._ensure_session()
        reference = args.get("memoryReference")
        if reference is None:
            raise AdapterCommandError("disassemble requires memoryReference")
        try:
            address = int(str(reference), 16)
        except ValueError as exc:
            raise AdapterCommandError(f"invalid memoryReference: {reference}") from exc
        address += int(args.get("offset") or 0)
        count = int(args.get("instructionCount") or 0)
        offset = int(args.get("instructionOffset") or 0)
        instructions = session.disassemble(address, count, offset)
        self.logger.info("disassemble: address=%X offset=%d count=%d", address, offset, len(instructions))
        source = None
        if session.source_file:
            source = {"name": Path(session.source_file).name, "path": session.source_file}
        body: List[JsonDict] = []
        for instruction in instructions:
            entry: JsonDict = {"address": instruction.address, "instruction": instruction.instruction}
            if instruction.line >= 0:
                entry["line"] = self._debugger_to_client_line(instruction.line)
                if source:
                    entry["location"] = source
            body.append(entry)
        return {"instructions": body}

    def _handle_terminate(self, args: JsonDict) -> JsonDict:
        self._defer(self._terminate_session)
        return {}

    def _handle_disconnect(self, args: JsonDict) -> JsonDict:
        self._shutdown()
        return {}

    # Internal helpers -------------------------------------------------
    def _start_session(self) -> None:
        if self.session is not None:
            return
        config = self.session_config or SessionConfig()
        session = self._session_factory(config)
        self._exit_reported = False
        self._events_token = session.event_bus.subscribe(
            EventSubscription(categories=["output", "exited"], queue_size=4096, handler=self._forward_event)
        )
        session.event_bus.start()
        self.session = session
        session.initialize()
        self.logger.info("CMON51 session ready")

    def _ensure_session(self) -> DebugSession:
        if self.session is None:
            raise AdapterCommandError("CMON51 session not started")
        return self.session

    def _current_registers(self) -> RegisterSnapshot:
        if self.registers is None:
            raise AdapterCommandError("target has not stopped yet")
        return self.registers

    def _schedule_run(self, method: str, reason: str) -> None:
        session = self._ensure_session()

        def run() -> None:
            try:
                self.registers = getattr(session, method)()
            except EXPECTED_ERRORS as exc:
                self.logger.warning("%s failed: %s", method, exc)
                self._emit_console_message(f"{method} failed: {exc}\n")
                return
            self.protocol.send_event("stopped", {"reason": reason, "threadId": THREAD_ID, "allThreadsStopped": True})

        # The response must reach the client before the stop event can.
        def start() -> None:
            self._worker = threading.Thread(target=run, name=f"cmon51-{method}", daemon=True)
            self._worker.start()

        self._defer(start)

    def _terminate_session(self) -> None:
        session = self._ensure_session()
        if session.state is SessionState.TERMINATED:
            # The monitor is already gone; report how it ended.
            exit_code = session.exit_code if session.exit_code is not None else 0
        else:
            exit_code = 0
            try:
                session.terminate()
            except AbnormalTerminationError as exc:
                exit_code = exc.exit_code
        self._report_exit(exit_code)

    def _report_exit(self, exit_code: int) -> None:
        with self._exit_lock:
            if self._exit_reported:
                return
            self._exit_reported = True
        self.logger.info("monitor exited with code %s", exit_code)
        self.protocol.send_event("terminated", {})
        self.protocol.send_event("exited", {"exitCode": exit_code})

    def _forward_event(self, event: BaseEvent) -> None:
        if isinstance(event, ExitedEvent):
            self._report_exit(event.exit_code)
            return
        self.protocol.send_event("output", {"category": "console", "output": getattr(event, "text", "")})

    def _emit_console_message(self, text: str) -> None:
        try:
            self.protocol.send_event("output", {"category": "console", "output": text})
        except Exception:
            self.logger.debug("failed to emit console output: %s", text, exc_info=True)

    def _defer(self, action: Callable[[], None]) -> None:
        self._deferred.append(action)

    def _run_deferred(self) -> None:
        actions, self._deferred = self._deferred, []
        for action in actions:
            try:
                action()
            except EXPECTED_ERRORS as exc:
                self.logger.warning("deferred action failed: %s", exc)
                self._emit_console_message(f"{exc}\n")
            except Exception:
                self.logger.exception("deferred action failed")

    def _client_to_debugger_line(self, line: int) -> int:
        return line - 1 if self.lines_start_at1 else line

    def _debugger_to_client_line(self, line: int) -> int:
        return line + 1 if self.lines_start_at1 else line

    def _shutdown(self) -> None:
        session = self.session
        if session is None:
            return
        if self._events_token is not None:
            session.event_bus.unsubscribe(self._events_token)
            self._events_token = None
        session.disconnect()
        session.event_bus.stop()
        self.session = None


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="CMON51 Debug Adapter", add_help=False)
    parser.add_argument("--executable", help="monitor host executable (default: $QUARTUS_ROOTDIR/bin64/quartus_stp)")
    parser.add_argument("--script", help=f"cmon51.tcl path (default: ${CMON51_PATH_ENV})")
    parser.add_argument("--timeout", type=float, help="seconds to wait for each monitor reply")
    parser.add_argument("--log-file")
    parser.add_argument("--log-level", default="INFO")
    args, _ = parser.parse_known_args(argv)
    if args.log_file:
        log_path = Path(args.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=args.log_file,
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s: %(message)s",
        force=True,
    )
    transport_config = TransportConfig.from_env(executable=args.executable)
    if args.script:
        transport_config.args = ["-t", args.script]
    config = SessionConfig(transport=transport_config, response_timeout=args.timeout)
    protocol = DAPProtocol(sys.stdin.buffer, sys.stdout.buffer)
    adapter = Cmon51DebugAdapter(protocol, session_config=config)
    logger = logging.getLogger("cmon51-dap")
    logger.info("CMON51 DAP adapter starting (pid=%s)", os.getpid())
    try:
        adapter.serve()
        logger.info("CMON51 DAP adapter exiting normally")
        return 0
    except Exception:
        logger.exception("CMON51 DAP adapter crashed")
        raise
