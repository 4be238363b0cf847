"""
Bot State Machine - The authoritative lifecycle of a fabrication device.

A bot moves through detection, connection and job processing. Each
long-running operation is bracketed by a transitional state entered by a
request event and left by the matching ``*Done`` or ``*Fail`` event:

    unavailable -detect-> detecting -detectDone-> ready
    ready -connect-> connecting -connectDone-> connected
    connected -start-> startingJob -startDone-> processingJob
    processingJob -stop-> stopping -stopDone-> connected
    connected/processingJob -> processingGcode -> back
    connected -disconnect-> disconnecting -disconnectDone-> ready
    * -unplug-> unavailable

The table is validated once when the machine is built. Firing an event the
current state does not declare is a sequencing bug: it is logged and raised
as ``InvalidTransitionError`` and the state is left untouched.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import InvalidTransitionError, TransitionTableError
from .logging_utils import LoggerLike, ensure_component_logger

WILDCARD = "*"


class BotState(Enum):
    """Lifecycle states of a bot."""
    UNAVAILABLE = "unavailable"
    DETECTING = "detecting"
    READY = "ready"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STARTING_JOB = "startingJob"
    PROCESSING_JOB = "processingJob"
    STOPPING = "stopping"
    PROCESSING_GCODE = "processingGcode"
    DISCONNECTING = "disconnecting"


class BotEvent(Enum):
    """Events that drive lifecycle transitions."""
    DETECT = "detect"
    DETECT_DONE = "detectDone"
    DETECT_FAIL = "detectFail"
    CONNECT = "connect"
    CONNECT_DONE = "connectDone"
    CONNECT_FAIL = "connectFail"
    START = "start"
    START_DONE = "startDone"
    START_FAIL = "startFail"
    STOP = "stop"
    STOP_DONE = "stopDone"
    STOP_FAIL = "stopFail"
    JOB_TO_GCODE = "jobToGcode"
    JOB_GCODE_DONE = "jobGcodeDone"
    JOB_GCODE_FAIL = "jobGcodeFail"
    CONNECTED_TO_GCODE = "connectedToGcode"
    CONNECTED_GCODE_DONE = "connectedGcodeDone"
    CONNECTED_GCODE_FAIL = "connectedGcodeFail"
    DISCONNECT = "disconnect"
    DISCONNECT_DONE = "disconnectDone"
    DISCONNECT_FAIL = "disconnectFail"
    UNPLUG = "unplug"


Edge = Tuple[BotEvent, Union[BotState, str], BotState]

# (event, from, to); WILDCARD as "from" expands to every state.
BOT_EDGES: Sequence[Edge] = (
    (BotEvent.DETECT,               BotState.UNAVAILABLE,      BotState.DETECTING),
    (BotEvent.DETECT_FAIL,          BotState.DETECTING,        BotState.UNAVAILABLE),
    (BotEvent.DETECT_DONE,          BotState.DETECTING,        BotState.READY),
    (BotEvent.CONNECT,              BotState.READY,            BotState.CONNECTING),
    (BotEvent.CONNECT_FAIL,         BotState.CONNECTING,       BotState.READY),
    (BotEvent.CONNECT_DONE,         BotState.CONNECTING,       BotState.CONNECTED),
    (BotEvent.START,                BotState.CONNECTED,        BotState.STARTING_JOB),
    (BotEvent.START_FAIL,           BotState.STARTING_JOB,     BotState.CONNECTED),
    (BotEvent.START_DONE,           BotState.STARTING_JOB,     BotState.PROCESSING_JOB),
    (BotEvent.STOP,                 BotState.PROCESSING_JOB,   BotState.STOPPING),
    (BotEvent.STOP_DONE,            BotState.STOPPING,         BotState.CONNECTED),
    (BotEvent.STOP_FAIL,            BotState.STOPPING,         BotState.CONNECTED),
    (BotEvent.JOB_TO_GCODE,         BotState.PROCESSING_JOB,   BotState.PROCESSING_GCODE),
    (BotEvent.JOB_GCODE_FAIL,       BotState.PROCESSING_GCODE, BotState.PROCESSING_JOB),
    (BotEvent.JOB_GCODE_DONE,       BotState.PROCESSING_GCODE, BotState.PROCESSING_JOB),
    (BotEvent.CONNECTED_TO_GCODE,   BotState.CONNECTED,        BotState.PROCESSING_GCODE),
    (BotEvent.CONNECTED_GCODE_FAIL, BotState.PROCESSING_GCODE, BotState.CONNECTED),
    (BotEvent.CONNECTED_GCODE_DONE, BotState.PROCESSING_GCODE, BotState.CONNECTED),
    (BotEvent.DISCONNECT,           BotState.CONNECTED,        BotState.DISCONNECTING),
    (BotEvent.DISCONNECT_FAIL,      BotState.DISCONNECTING,    BotState.CONNECTED),
    (BotEvent.DISCONNECT_DONE,      BotState.DISCONNECTING,    BotState.READY),
    (BotEvent.UNPLUG,               WILDCARD,                  BotState.UNAVAILABLE),
)

TransitionTable = Dict[Tuple[BotState, BotEvent], BotState]
StateObserver = Callable[[str], None]


def build_transition_table(edges: Iterable[Edge]) -> TransitionTable:
    """Expand wildcards and validate an edge list into a lookup table.

    Raises:
        TransitionTableError: if an edge names an unknown state or event, or
            the same (state, event) pair leads to two different targets.
    """
    table: TransitionTable = {}
    for edge in edges:
        try:
            event, source, target = edge
        except (TypeError, ValueError) as exc:
            raise TransitionTableError(f"Malformed edge {edge!r}") from exc

        if not isinstance(event, BotEvent):
            raise TransitionTableError(f"Unknown event {event!r} in edge {edge!r}")
        if not isinstance(target, BotState):
            raise TransitionTableError(f"Unknown target state {target!r} in edge {edge!r}")

        if source == WILDCARD:
            sources: Iterable[BotState] = list(BotState)
        elif isinstance(source, BotState):
            sources = (source,)
        else:
            raise TransitionTableError(f"Unknown source state {source!r} in edge {edge!r}")

        for state in sources:
            existing = table.get((state, event))
            if existing is not None and existing is not target:
                raise TransitionTableError(
                    f"Conflicting targets for {event.value} from {state.value}: "
                    f"{existing.value} vs {target.value}"
                )
            table[(state, event)] = target
    return table


class BotStateMachine:
    """
    Table-driven lifecycle state machine for a single bot.

    Observers are plain callables receiving the new state name; they run
    synchronously inside ``fire`` so they always see a transition before any
    dependent logic proceeds. An observer that raises is logged and skipped.

    Usage:
        fsm = BotStateMachine()
        fsm.subscribe(lambda state: print("stateChange", state))
        fsm.fire(BotEvent.DETECT)       # unavailable -> detecting
        fsm.fire(BotEvent.DETECT_DONE)  # detecting -> ready
    """

    def __init__(
        self,
        edges: Iterable[Edge] = BOT_EDGES,
        initial: BotState = BotState.UNAVAILABLE,
        logger: LoggerLike = None,
    ):
        self.logger = ensure_component_logger(logger, fallback_name="BotStateMachine")
        self._table = build_transition_table(edges)
        self._state = initial
        self._observers: List[StateObserver] = []

    @property
    def state(self) -> BotState:
        return self._state

    @property
    def current(self) -> str:
        """Name of the current state."""
        return self._state.value

    def is_in(self, *states: BotState) -> bool:
        return self._state in states

    def can(self, event: BotEvent) -> bool:
        """Whether ``event`` is declared for the current state."""
        return (self._state, event) in self._table

    def allowed_events(self) -> List[BotEvent]:
        return [event for (state, event) in self._table if state is self._state]

    def subscribe(self, observer: StateObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: StateObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def fire(self, event: BotEvent) -> BotState:
        """Apply ``event`` to the current state and notify observers.

        Returns:
            The new state.

        Raises:
            InvalidTransitionError: if the event is not declared for the
                current state. The state is unchanged.
        """
        source = self._state
        target: Optional[BotState] = self._table.get((source, event))
        if target is None:
            error = InvalidTransitionError(event.value, source.value)
            self.logger.error(str(error))
            raise error

        self._state = target
        self.logger.info("Bot event %s: Transitioning from %s to %s.", event.value, source.value, target.value)
        self._notify(target)
        return target

    def _notify(self, state: BotState) -> None:
        for observer in list(self._observers):
            try:
                observer(state.value)
            except Exception as e:
                self.logger.error("stateChange observer error: %s", e)


__all__ = [
    "BOT_EDGES",
    "BotEvent",
    "BotState",
    "BotStateMachine",
    "StateObserver",
    "WILDCARD",
    "build_transition_table",
]
