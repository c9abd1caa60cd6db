"""
Transport layer for cmon51dbg.

Responsibilities:
    * Spawn the CMON51 monitor inside a pseudo-terminal.
    * Deliver raw output chunks to a single registered handler.
    * Write command lines and surface process exit to callers.

CMON51 runs inside a Tcl shell that fully buffers its output when stdout is
a pipe, so the child must see a real terminal for replies to arrive while
the session is still running.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pexpect


logger = logging.getLogger(__name__)

CMON51_PATH_ENV = "CMON51_PATH"
QUARTUS_ROOT_ENV = "QUARTUS_ROOTDIR"
DEFAULT_CMON51_SCRIPT = "C:\\CrossIDE\\cmon51.tcl"

OutputHandler = Callable[[str], None]
ExitCallback = Callable[[int], None]


class TransportError(RuntimeError):
    """Raised when the transport cannot complete an operation."""


class TransportSpawnError(TransportError):
    """Raised when the monitor process cannot be started."""


def _default_executable() -> str:
    root = os.environ.get(QUARTUS_ROOT_ENV, "")
    name = "quartus_stp.exe" if sys.platform.startswith("win") else "quartus_stp"
    return str(Path(root) / "bin64" / name)


@dataclass
class TransportConfig:
    executable: str = ""
    args: List[str] = field(default_factory=list)
    encoding: str = "latin-1"
    read_size: int = 4096
    poll_interval: float = 0.1
    line_terminator: str = "\r\n"
    dimensions: Tuple[int, int] = (24, 200)
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> "TransportConfig":
        """Build the default quartus_stp + cmon51.tcl command line."""
        script = os.environ.get(CMON51_PATH_ENV) or DEFAULT_CMON51_SCRIPT
        config = cls(executable=_default_executable(), args=["-t", script])
        for key, value in overrides.items():
            if value is not None:
                setattr(config, key, value)
        return config


@dataclass
class PtyTransport:
    """Owns the monitor process and its pseudo-terminal."""

    config: TransportConfig = field(default_factory=TransportConfig.from_env)

    _child: Optional[pexpect.spawn] = field(init=False, default=None)
    _reader_thread: Optional[threading.Thread] = field(init=False, default=None)
    _write_lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _output_handler: Optional[OutputHandler] = field(init=False, default=None)
    _on_exit: List[ExitCallback] = field(init=False, default_factory=list)
    _exited: threading.Event = field(init=False, default_factory=threading.Event)
    _exit_code: Optional[int] = field(init=False, default=None)
    _shutdown: bool = field(init=False, default=False)

    #
    # Process lifecycle
    #
    @property
    def is_alive(self) -> bool:
        child = self._child
        return child is not None and not self._exited.is_set() and child.isalive()

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def pid(self) -> Optional[int]:
        return self._child.pid if self._child is not None else None

    def set_output_handler(self, handler: Optional[OutputHandler]) -> None:
        self._output_handler = handler

    def register_on_exit(self, callback: ExitCallback) -> None:
        self._on_exit.append(callback)

    def start(self) -> None:
        if self._child is not None:
            raise TransportError("transport already started")
        cfg = self.config
        logger.info("spawning %s %s", cfg.executable, " ".join(cfg.args))
        try:
            child = pexpect.spawn(
                cfg.executable,
                list(cfg.args),
                encoding=cfg.encoding,
                codec_errors="replace",
                dimensions=cfg.dimensions,
                env=cfg.env,
                cwd=cfg.cwd,
                echo=True,
            )
        except (pexpect.ExceptionPexpect, OSError) as exc:
            raise TransportSpawnError(f"failed to start {cfg.executable}: {exc}") from exc
        self._child = child
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            name="cmon51-pty-reader",
            daemon=True,
        )
        self._reader_thread.start()

    def write(self, line: str) -> None:
        """Send one command line followed by the line terminator."""
        child = self._child
        if child is None or self._exited.is_set():
            raise TransportError("monitor process is not running")
        logger.debug("send %r", line)
        with self._write_lock:
            try:
                child.send(line + self.config.line_terminator)
            except OSError as exc:
                raise TransportError(f"write failed: {exc}") from exc

    def wait_for_exit(self, timeout: Optional[float] = None) -> int:
        if self._child is None:
            raise TransportError("transport not started")
        if not self._exited.wait(timeout):
            raise TransportError("timed out waiting for monitor exit")
        assert self._exit_code is not None  # set before the event fires
        return self._exit_code

    def kill(self) -> None:
        """Forcefully end the monitor; exit callbacks still fire."""
        self._shutdown = True
        child = self._child
        if child is None:
            return
        if self._exited.is_set():
            return
        try:
            if child.isalive():
                child.terminate(force=True)
        except pexpect.ExceptionPexpect as exc:
            logger.warning("failed to kill monitor: %s", exc)

    def close(self) -> None:
        self.kill()
        thread = self._reader_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    #
    # Internal helpers
    #
    def _reader_loop(self) -> None:
        child = self._child
        assert child is not None
        while True:
            try:
                chunk = child.read_nonblocking(self.config.read_size, timeout=self.config.poll_interval)
            except pexpect.TIMEOUT:
                if self._shutdown and not child.isalive():
                    break
                continue
            except (pexpect.EOF, OSError):
                break
            if chunk:
                self._dispatch_output(chunk)
        self._handle_exit(child)

    def _dispatch_output(self, chunk: str) -> None:
        handler = self._output_handler
        if handler is None:
            return
        try:
            handler(chunk)
        except Exception:
            # Output consumers should not stop the reader.
            logger.exception("output handler failed")

    def _handle_exit(self, child: pexpect.spawn) -> None:
        try:
            child.wait()
        except pexpect.ExceptionPexpect:
            logger.debug("wait on monitor failed", exc_info=True)
        try:
            child.close()
        except (pexpect.ExceptionPexpect, OSError):
            logger.debug("close of monitor pty failed", exc_info=True)
        if child.exitstatus is not None:
            code = int(child.exitstatus)
        elif child.signalstatus is not None:
            code = -int(child.signalstatus)
        else:
            code = -1
        self._exit_code = code
        self._exited.set()
        logger.info("monitor exited with code %s", code)
        for callback in list(self._on_exit):
            try:
                callback(code)
            except Exception:
                logger.exception("exit callback failed")
