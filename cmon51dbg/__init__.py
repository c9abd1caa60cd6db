"""
cmon51dbg - Session protocol engine for the CMON51 8051 monitor.

CMON51 is an interactive shell with no framing: replies are free-form text
correlated with commands only by arrival order.  This package turns that
stream into typed, awaitable replies.  Each module is implemented in its
own file to keep responsibilities clear:

    transport.py  → PTY process ownership, raw output, exit notification
    sanitize.py   → escape-sequence normalisation and line assembly
    expect.py     → FIFO matcher queue and its consumer thread
    listing.py    → source line ↔ address map from assembler listings
    status.py     → register dump parsing
    disasm.py     → disassembly windows with pre-program padding
    events.py     → observation channel (raw output, stops, exit)
    session.py    → the operation surface used by front-ends
"""

from .transport import PtyTransport, TransportConfig, TransportError, TransportSpawnError  # noqa: F401
from .sanitize import LineAssembler, sanitize  # noqa: F401
from .expect import Expectation, ExpectEngine, ExpectKind, ExpectTimeoutError, MatcherQueue  # noqa: F401
from .listing import AddressLineMap, ListingError, parse_listing, read_listing  # noqa: F401
from .status import REGISTER_NAMES, RegisterSnapshot, await_status  # noqa: F401
from .disasm import DisassemblyPlan, Instruction, disassemble, plan_window  # noqa: F401
from .events import (  # noqa: F401
    BaseEvent,
    EventBus,
    EventSubscription,
    ExitedEvent,
    OutputEvent,
    StoppedEvent,
)
from .session import (  # noqa: F401
    AbnormalTerminationError,
    DebugSession,
    ProtocolMismatchError,
    SessionConfig,
    SessionContext,
    SessionState,
    StaleSessionError,
)

__all__ = [
    "PtyTransport",
    "TransportConfig",
    "TransportError",
    "TransportSpawnError",
    "LineAssembler",
    "sanitize",
    "Expectation",
    "ExpectEngine",
    "ExpectKind",
    "ExpectTimeoutError",
    "MatcherQueue",
    "AddressLineMap",
    "ListingError",
    "parse_listing",
    "read_listing",
    "REGISTER_NAMES",
    "RegisterSnapshot",
    "await_status",
    "DisassemblyPlan",
    "Instruction",
    "disassemble",
    "plan_window",
    "BaseEvent",
    "EventBus",
    "EventSubscription",
    "ExitedEvent",
    "OutputEvent",
    "StoppedEvent",
    "AbnormalTerminationError",
    "DebugSession",
    "ProtocolMismatchError",
    "SessionConfig",
    "SessionContext",
    "SessionState",
    "StaleSessionError",
]

__version__ = "0.1.0"
