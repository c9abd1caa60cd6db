"""Debug session facade built on top of the PTY transport."""

from __future__ import annotations

import enum
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union

from .disasm import Instruction, disassemble
from .events import EventBus, ExitedEvent, OutputEvent, StoppedEvent
from .expect import ExpectEngine, PatternLike
from .listing import AddressLineMap, read_listing
from .sanitize import DEFAULT_PROMPT
from .status import RegisterSnapshot, await_status
from .transport import PtyTransport, TransportConfig, TransportError


logger = logging.getLogger(__name__)

LINE_END = re.compile(r"\r")
REGISTER_VALUE = re.compile(r"(?P<data>^[0-9A-F]+\r?$)|\r")
BREAKPOINT_ENTRY = re.compile(r"\b(?P<address>[0-9A-F]{4})\b")
HANDSHAKE = re.compile(r"A =")

ListingReader = Callable[[Union[str, Path]], AddressLineMap]


class StaleSessionError(RuntimeError):
    """Raised when an operation runs before the state it depends on exists."""


class ProtocolMismatchError(RuntimeError):
    """Raised when the monitor answers with something other than the expected reply."""

    def __init__(self, message: str, text: str) -> None:
        super().__init__(message)
        self.text = text


class AbnormalTerminationError(RuntimeError):
    """Raised when the monitor exits with a non-zero status."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"monitor exited with code {exit_code}")
        self.exit_code = exit_code


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    BREAKPOINTS_SET = "breakpoints-set"
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


@dataclass
class SessionConfig:
    transport: TransportConfig = field(default_factory=TransportConfig.from_env)
    prompt: PatternLike = DEFAULT_PROMPT
    response_timeout: Optional[float] = None
    listing_reader: ListingReader = read_listing


@dataclass
class SessionContext:
    """Mutable per-session protocol state."""

    engine: ExpectEngine
    line_map: Optional[AddressLineMap] = None
    source_file: Optional[str] = None
    registers: Optional[RegisterSnapshot] = None
    exit_code: Optional[int] = None


class DebugSession:
    """
    Drives one CMON51 monitor process.

    Line numbers are 0-based.  Calls must be serialized by the caller: one
    operation at a time, except ``disconnect`` which may interrupt any of
    them.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        *,
        transport: Optional[PtyTransport] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self.config = config or SessionConfig()
        self.transport = transport or PtyTransport(self.config.transport)
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self.context = SessionContext(
            engine=ExpectEngine(prompt=self.config.prompt, timeout=self.config.response_timeout),
        )
        self.state = SessionState.UNINITIALIZED
        self._state_lock = threading.Lock()

    @property
    def source_file(self) -> Optional[str]:
        return self.context.source_file

    @property
    def registers(self) -> Optional[RegisterSnapshot]:
        return self.context.registers

    @property
    def exit_code(self) -> Optional[int]:
        """The monitor's exit status once it has exited."""
        return self.context.exit_code

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Start the monitor and wait until it accepts commands."""
        if self.state is not SessionState.UNINITIALIZED:
            raise StaleSessionError(f"session already {self.state.value}")
        engine = self.context.engine
        engine.start()
        self.transport.set_output_handler(self._handle_output)
        self.transport.register_on_exit(self._handle_exit)
        try:
            self.transport.start()
        except TransportError:
            engine.close()
            self._set_state(SessionState.TERMINATED)
            raise
        # A status dump proves the shell is reading input.
        self._send("r")
        engine.await_sequence([HANDSHAKE, engine.matcher.prompt], timeout=self.config.response_timeout)
        self._set_state(SessionState.READY)
        logger.info("monitor ready")

    def terminate(self) -> None:
        """Ask the monitor to exit and wait for it."""
        self._require_active()
        self._set_state(SessionState.TERMINATING)
        try:
            self._send("exit")
            exit_code = self.transport.wait_for_exit()
        finally:
            self._release()
        if exit_code != 0:
            raise AbnormalTerminationError(exit_code)

    def disconnect(self) -> None:
        """Kill the monitor without any protocol exchange."""
        if self.state in (SessionState.UNINITIALIZED, SessionState.TERMINATED):
            return
        self.transport.set_output_handler(None)
        self.context.engine.abort(TransportError("session disconnected"))
        self.transport.kill()
        self._release()

    # ------------------------------------------------------------------
    # Breakpoints
    # ------------------------------------------------------------------
    def set_breakpoints(self, file: Union[str, Path], lines: List[int]) -> List[int]:
        """Replace all breakpoints; returns the lines they actually landed on."""
        self._require_active()
        ctx = self.context
        ctx.source_file = str(file)
        if ctx.line_map is None:
            ctx.line_map = self.config.listing_reader(file)
            logger.info("loaded address map for %s: %r", file, ctx.line_map)
        addresses = [ctx.line_map.address_for_line(line) for line in lines]
        self._send("brc")
        for address in addresses:
            self._send("bron", address)
        self._expect_prompts(len(addresses) + 1)
        if self.state is SessionState.READY:
            self._set_state(SessionState.BREAKPOINTS_SET)
        return [ctx.line_map.last_line_of(address) for address in addresses]

    def get_breakpoints(self) -> List[int]:
        line_map = self._require_map()
        self._send("brl")
        matches = self.context.engine.await_until_prompt(BREAKPOINT_ENTRY, timeout=self.config.response_timeout)
        return [line_map.last_line_of(match.group("address")) for match in matches]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def continue_(self) -> RegisterSnapshot:
        """Run until the next breakpoint."""
        return self._run("g", "breakpoint")

    def next(self) -> RegisterSnapshot:
        """Execute one instruction."""
        return self._run("s", "step")

    # The monitor only single steps.
    step_in = next
    step_out = next

    def variables(self) -> RegisterSnapshot:
        self._require_active()
        self._send("r")
        return self._read_status()

    # ------------------------------------------------------------------
    # Registers and raw commands
    # ------------------------------------------------------------------
    def read_register(self, register: str) -> str:
        self._require_active()
        self._send(register)
        _, result, _ = self.context.engine.await_sequence(
            [LINE_END, REGISTER_VALUE, self.context.engine.matcher.prompt],
            timeout=self.config.response_timeout,
        )
        data = result.group("data")
        if not data:
            raise ProtocolMismatchError(f"cannot read {register}", result.string)
        return data.rstrip("\r")

    def write_register(self, register: str, value: str) -> None:
        self._require_active()
        self._send(f"{register}={value}")
        self._expect_prompts(1)

    def evaluate(self, command: str) -> None:
        """Send an arbitrary monitor command; its output only goes to observers."""
        self._require_active()
        self._send(command)
        self._expect_prompts(1)

    def disassemble(self, address: int, instruction_count: int, instruction_offset: int = 0) -> List[Instruction]:
        line_map = self._require_map()
        return disassemble(
            self._send,
            self.context.engine,
            line_map,
            address,
            instruction_count,
            instruction_offset,
            timeout=self.config.response_timeout,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _send(self, command: str, *args: str) -> None:
        self.transport.write(" ".join([command, *args]))

    def _expect_prompts(self, count: int) -> None:
        prompt = self.context.engine.matcher.prompt
        self.context.engine.await_sequence([prompt] * count, timeout=self.config.response_timeout)

    def _run(self, command: str, reason: str) -> RegisterSnapshot:
        self._require_active()
        self._set_state(SessionState.RUNNING)
        try:
            self._send(command)
            snapshot = self._read_status()
        finally:
            # An exit while running has already moved the state on.
            self._set_state(SessionState.STOPPED, only_from=SessionState.RUNNING)
        self.event_bus.publish(StoppedEvent(reason=reason, line=snapshot.line, pc=snapshot.pc))
        return snapshot

    def _read_status(self) -> RegisterSnapshot:
        snapshot = await_status(self.context.engine, self.context.line_map, timeout=self.config.response_timeout)
        self.context.registers = snapshot
        return snapshot

    def _require_active(self) -> None:
        if self.state in (SessionState.UNINITIALIZED, SessionState.TERMINATING, SessionState.TERMINATED):
            raise StaleSessionError(f"session is {self.state.value}")

    def _require_map(self) -> AddressLineMap:
        self._require_active()
        if self.context.line_map is None:
            raise StaleSessionError("no address map loaded; set breakpoints first")
        return self.context.line_map

    def _set_state(self, state: SessionState, *, only_from: Optional[SessionState] = None) -> None:
        with self._state_lock:
            if self.state is state:
                return
            if only_from is not None and self.state is not only_from:
                return
            logger.debug("session %s -> %s", self.state.value, state.value)
            self.state = state

    def _release(self) -> None:
        self.transport.set_output_handler(None)
        self.context.engine.close()
        self._set_state(SessionState.TERMINATED)

    def _handle_output(self, chunk: str) -> None:
        self.event_bus.publish(OutputEvent(text=chunk))
        self.context.engine.feed(chunk)

    def _handle_exit(self, exit_code: int) -> None:
        self.context.exit_code = exit_code
        engine = self.context.engine
        engine.abort(TransportError(f"monitor exited with code {exit_code}"))
        # Nothing can answer once the monitor is gone.
        engine.close()
        self.event_bus.publish(ExitedEvent(exit_code=exit_code))
        if self.state is not SessionState.TERMINATING:
            self._set_state(SessionState.TERMINATED)
