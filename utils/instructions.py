"""
udi-Tahoma-pg3 NodeServer/Plugin for EISY/Polisy

(C) 2025 Stephen Jenkins

Translate a shutter control payload into a TaHoma device instruction.
"""

# std libraries
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

# external libraries
from udi_interface import LOGGER

Number = Union[int, float]

# leading integer as accepted by the gateway UI: "42", " -7", "12.5", "30abc"
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

LOW_SPEED_COMMAND = "position_low_speed"


class Action(str, Enum):
    """Control actions accepted in a payload."""

    OPEN = "open"
    CLOSE = "close"
    CUSTOM_POSITION = "customPosition"
    CUSTOM_ROTATION = "customRotation"
    CUSTOM_ORIENTATION = "customOrientation"
    CUSTOM_CLOSURE_AND_ORIENTATION = "customClosureAndOrientation"
    STOP = "stop"
    WINK = "wink"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, text: Any) -> "Action":
        try:
            return cls(text)
        except ValueError:
            return cls.UNRECOGNIZED


class TahomaCommand(str, Enum):
    """Device level command names understood by the gateway."""

    OPEN = "open"
    CLOSE = "close"
    ROTATION = "rotation"
    STOP = "stop"
    SET_CLOSURE = "setClosure"
    SET_CLOSURE_AND_ORIENTATION = "setClosureAndOrientation"
    WINK = "wink"


@dataclass
class ControlPayload:
    action: str
    orientation: Optional[str] = None
    position: Optional[str] = None
    repetitions: Optional[str] = None
    lowspeed: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlPayload":
        """Build a payload from a message-like mapping, missing keys become None."""
        return cls(
            action=data.get("action"),
            orientation=data.get("orientation"),
            position=data.get("position"),
            repetitions=data.get("repetitions"),
            lowspeed=bool(data.get("lowspeed", False)),
        )


@dataclass(frozen=True)
class CommandDescriptor:
    name: str
    parameters: Tuple[Number, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "parameters": list(self.parameters)}


@dataclass(frozen=True)
class ExpectedState:
    open: Optional[bool] = None
    position: Optional[Number] = None
    orientation: Optional[Number] = None
    repetitions: Optional[Number] = None


@dataclass(frozen=True)
class Labels:
    progress: str
    done: str


@dataclass(frozen=True)
class Instruction:
    command: TahomaCommand
    labels: Labels
    parameters: Tuple[Number, ...] = ()
    expected_state: Optional[ExpectedState] = None


def parse_int(text: Any) -> Number:
    """
    Base-10 parse of the leading integer in text.
    Returns NaN when there is none; callers pass NaN through unchanged.
    """
    if text is None:
        return math.nan
    match = _LEADING_INT.match(str(text))
    if match is None:
        return math.nan
    return int(match.group(1))


def _open(payload: ControlPayload) -> Instruction:
    return Instruction(
        command=TahomaCommand.OPEN,
        expected_state=ExpectedState(open=True, position=0),
        labels=Labels(progress="Opening...", done="Open"),
    )


def _close(payload: ControlPayload) -> Instruction:
    return Instruction(
        command=TahomaCommand.CLOSE,
        expected_state=ExpectedState(open=False, position=100),
        labels=Labels(progress="Closing...", done="Closed"),
    )


def _custom_position(payload: ControlPayload) -> Instruction:
    position = parse_int(payload.position)
    return Instruction(
        command=TahomaCommand.SET_CLOSURE,
        parameters=(position,),
        expected_state=ExpectedState(open=True, position=position),
        labels=Labels(
            progress=f"Setting to {payload.position}",
            done=f"Set to {payload.position}",
        ),
    )


def _custom_rotation(payload: ControlPayload) -> Instruction:
    orientation = parse_int(payload.orientation)
    return Instruction(
        command=TahomaCommand.ROTATION,
        parameters=(orientation,),
        expected_state=ExpectedState(orientation=orientation),
        labels=Labels(
            progress=f"Rotating to {payload.orientation}...",
            done=f"Rotated to {payload.orientation}",
        ),
    )


def _custom_closure_and_orientation(payload: ControlPayload) -> Instruction:
    position = parse_int(payload.position)
    orientation = parse_int(payload.orientation)
    target = f"position:{payload.position}, orientation:{payload.orientation}"
    return Instruction(
        command=TahomaCommand.SET_CLOSURE_AND_ORIENTATION,
        parameters=(position, orientation),
        expected_state=ExpectedState(position=position, orientation=orientation),
        labels=Labels(progress=f"Moving to {target}...", done=f"Set to {target}"),
    )


def _stop(payload: ControlPayload) -> Instruction:
    # fire and forget, nothing to observe on completion
    return Instruction(
        command=TahomaCommand.STOP,
        labels=Labels(progress="Stopping...", done="Stopped"),
    )


def _wink(payload: ControlPayload) -> Instruction:
    repetitions = parse_int(payload.repetitions)
    return Instruction(
        command=TahomaCommand.WINK,
        parameters=(repetitions,),
        expected_state=ExpectedState(repetitions=repetitions),
        labels=Labels(
            progress=f"Winking {payload.repetitions} time(s)",
            done="Stopped",
        ),
    )


# Dispatch map, one builder per recognized action.
_ACTION_MAP = {
    Action.OPEN: _open,
    Action.CLOSE: _close,
    Action.CUSTOM_POSITION: _custom_position,
    Action.CUSTOM_ROTATION: _custom_rotation,
    Action.CUSTOM_ORIENTATION: _custom_rotation,
    Action.CUSTOM_CLOSURE_AND_ORIENTATION: _custom_closure_and_orientation,
    Action.STOP: _stop,
    Action.WINK: _wink,
}


def resolve(payload: ControlPayload) -> Optional[Instruction]:
    """
    Map a control payload to its instruction.
    Returns None for an unrecognized action, the caller ignores the payload.
    """
    action = Action.parse(payload.action)
    builder = _ACTION_MAP.get(action)
    if builder is None:
        LOGGER.debug(f"unrecognized action: {payload.action!r}")
        return None
    return builder(payload)


def build_command(instruction: Instruction, lowspeed: bool = False) -> CommandDescriptor:
    """
    Wire level command for an instruction.

    With lowspeed requested, any command other than stop is replaced by the
    low speed positioning command targeting the expected position (0 if none).
    Labels and expected state of the instruction are left as they are.
    """
    if lowspeed and instruction.command is not TahomaCommand.STOP:
        state = instruction.expected_state
        target = state.position if state is not None else None
        if not target or (isinstance(target, float) and math.isnan(target)):
            target = 0
        return CommandDescriptor(name=LOW_SPEED_COMMAND, parameters=(target,))
    return CommandDescriptor(
        name=instruction.command.value, parameters=tuple(instruction.parameters)
    )
