"""
udi-Tahoma-pg3 NodeServer/Plugin for EISY/Polisy

(C) 2025 Stephen Jenkins

TahomaShutter class
"""

# std libraries
import asyncio
import math
from typing import Any, Dict, Optional

# external libraries
from udi_interface import Node, LOGGER

# local imports
from utils.node_funcs import (
    FieldSpec,
    load_persistent_data,
    store_values,
    get_config_data,
)
from utils.instructions import (
    Action,
    ControlPayload,
    Instruction,
    CommandDescriptor,
    resolve,
    build_command,
)
from utils.completion import continue_when_completed

# constants
STATUS_UNKNOWN = 0
STATUS_PROGRESS = 1
STATUS_DONE = 2

LABEL_UNKNOWN = "Unknown"

# Single source of truth for field names, driver codes, and defaults
FIELDS: dict[str, FieldSpec] = {
    # State variables (pushed to drivers)
    "status": FieldSpec(driver="ST", default=STATUS_UNKNOWN, data_type="state"),
    "position": FieldSpec(driver="GV0", default=0, data_type="state"),
    "orientation": FieldSpec(driver="GV1", default=0, data_type="state"),
    "lowspeed": FieldSpec(driver="GV2", default=0, data_type="state"),
    "label": FieldSpec(driver=None, default=LABEL_UNKNOWN, data_type="state"),
    # Configuration variables (set during discovery/config, no driver)
    "device": FieldSpec(driver=None, default="", data_type="config"),
}

# command reported to ISY once an action reaches its terminal status
REPORT_CMD = {
    Action.OPEN: "OPEN",
    Action.CLOSE: "CLOSE",
    Action.CUSTOM_POSITION: "SETPOS",
    Action.CUSTOM_ROTATION: "ROTATE",
    Action.CUSTOM_ORIENTATION: "ROTATE",
    Action.CUSTOM_CLOSURE_AND_ORIENTATION: "SETPOSROT",
    Action.STOP: "STOP",
    Action.WINK: "WINK",
}


class TahomaShutter(Node):
    id = "tahomashutter"

    """Represents one Somfy shutter, blind or awning behind a TaHoma gateway.

    A command from ISY is resolved into a device instruction, sent to the
    gateway, and followed until the gateway no longer lists the execution.

    ST walks Unknown(0) -> In Progress(1) -> Done(2).  Stop is fire and
    forget: it goes straight from In Progress to Unknown once accepted.
    The command is reported back to ISY only after that terminal status.

    All gateway traffic runs on the controller's event loop, so the
    Polyglot command thread never blocks on the gateway.
    """

    def __init__(self, poly, primary, address, name):
        """Initializes the TahomaShutter node.

        Args:
            poly (udi_interface.Polyglot): The Polyglot interface object.
            primary (str): The address of the primary node (the Controller).
            address (str): The address of this node.
            name (str): The name of this node.
        """
        super().__init__(poly, primary, address, name)

        self.poly = poly
        self.primary = primary
        self.controller = poly.getNode(self.primary)
        self.address = address
        self.name = name
        self.lpfx = f"{address}:{name}"

        # awaitable sleep used between status polls
        self.sleep = asyncio.sleep

        # default variables and drivers
        self.data = {field: spec.default for field, spec in FIELDS.items()}
        self.dev = None

        self.poly.subscribe(self.poly.START, self.start, address)

    def start(self):
        """Performs startup tasks, loads persistent data, and retrieves configuration."""
        LOGGER.info(f"start: shutter:{self.lpfx}")

        # wait for controller start ready
        self.controller.ready_event.wait()

        # get persistent data from polyglot
        load_persistent_data(self, FIELDS)

        # a movement in flight when we stopped can not be followed anymore
        if self.data["status"] == STATUS_PROGRESS:
            self._set_status(STATUS_UNKNOWN, LABEL_UNKNOWN)

        # retrieve configuration data
        if get_config_data(self, FIELDS) and "lowspeed" in self.dev:
            self.data["lowspeed"] = int(bool(self.dev["lowspeed"]))
            self.setDriver("GV2", self.data["lowspeed"])
        store_values(self)

        LOGGER.info(f"data:{self.data}")

    def control(self, payload: ControlPayload):
        """Run one control payload against the device.

        Returns:
            concurrent.futures.Future | None: completes after the terminal
            status, carries any gateway error; None if the action is ignored.
        """
        LOGGER.info(f"{self.lpfx}, {payload}")
        instruction = resolve(payload)
        if instruction is None:
            LOGGER.info(f"{self.lpfx}, unrecognized action {payload.action!r}, ignored")
            return None

        command = build_command(instruction, payload.lowspeed)
        report = REPORT_CMD[Action.parse(payload.action)]

        self._set_targets(instruction)
        self._set_status(STATUS_PROGRESS, instruction.labels.progress)

        future = asyncio.run_coroutine_threadsafe(
            self._execute(instruction, command, report), self.controller.mainloop
        )
        future.add_done_callback(self._execute_done)
        LOGGER.debug("Exit")
        return future

    async def _execute(
        self, instruction: Instruction, command: CommandDescriptor, report: str
    ) -> None:
        """Issue the command, wait for completion when observable, then report."""
        api = self.controller.api
        response = await api.execute(self.data["device"], command)

        if instruction.expected_state is None:
            self._set_status(STATUS_UNKNOWN, LABEL_UNKNOWN)
        else:
            await continue_when_completed(
                response["execId"], api.get_status_for_execution_id, sleep=self.sleep
            )
            self._set_status(STATUS_DONE, instruction.labels.done)

        self.reportCmd(report)

    def _execute_done(self, future) -> None:
        if future.cancelled():
            LOGGER.warning(f"{self.lpfx}, execution cancelled")
            return
        ex = future.exception()
        if ex is not None:
            LOGGER.error(f"{self.lpfx}, execution failed: {ex}", exc_info=ex)

    def _set_status(self, status: int, label: str) -> None:
        LOGGER.info(f"{self.lpfx}, status:{status} {label}")
        self.data["status"] = status
        self.data["label"] = label
        self.setDriver("ST", status)
        store_values(self)

    def _set_targets(self, instruction: Instruction) -> None:
        """Show the expected position / orientation, skipping unknown or NaN."""
        state = instruction.expected_state
        if state is None:
            return
        for field in ("position", "orientation"):
            value = getattr(state, field)
            if value is None or (isinstance(value, float) and math.isnan(value)):
                continue
            self.data[field] = value
            self.setDriver(FIELDS[field].driver, value)

    def _payload(self, action: str, **fields: Any) -> ControlPayload:
        return ControlPayload(
            action=action, lowspeed=bool(self.data["lowspeed"]), **fields
        )

    def open_cmd(self, command: Optional[Dict[str, Any]] = None):
        """Opens the shutter fully."""
        LOGGER.info(f"{self.lpfx}, {command}")
        return self.control(self._payload(Action.OPEN.value))

    def close_cmd(self, command: Optional[Dict[str, Any]] = None):
        """Closes the shutter fully."""
        LOGGER.info(f"{self.lpfx}, {command}")
        return self.control(self._payload(Action.CLOSE.value))

    def stop_cmd(self, command: Optional[Dict[str, Any]] = None):
        LOGGER.info(f"{self.lpfx}, {command}")
        return self.control(self._payload(Action.STOP.value))

    def set_position_cmd(self, command: Optional[Dict[str, Any]] = None):
        """Moves to a closure percentage, value from the command."""
        LOGGER.info(f"{self.lpfx}, {command}")
        position = (command or {}).get("value")
        return self.control(self._payload(Action.CUSTOM_POSITION.value, position=position))

    def rotate_cmd(self, command: Optional[Dict[str, Any]] = None):
        """Rotates the slats to an orientation, value from the command."""
        LOGGER.info(f"{self.lpfx}, {command}")
        orientation = (command or {}).get("value")
        return self.control(
            self._payload(Action.CUSTOM_ROTATION.value, orientation=orientation)
        )

    def set_position_rotation_cmd(self, command: Optional[Dict[str, Any]] = None):
        """Moves and rotates in one go, both values from the command query."""
        LOGGER.info(f"{self.lpfx}, {command}")
        query = (command or {}).get("query", {})
        return self.control(
            self._payload(
                Action.CUSTOM_CLOSURE_AND_ORIENTATION.value,
                position=query.get("POS.uom100"),
                orientation=query.get("ROT.uom100"),
            )
        )

    def wink_cmd(self, command: Optional[Dict[str, Any]] = None):
        """Makes the device wink, repetitions from the command."""
        LOGGER.info(f"{self.lpfx}, {command}")
        repetitions = (command or {}).get("value")
        return self.control(self._payload(Action.WINK.value, repetitions=repetitions))

    def set_lowspeed_cmd(self, command):
        """Turns the low speed positioning preference on or off."""
        LOGGER.info(f"{self.lpfx}, {command}")
        lowspeed = 1 if int(command.get("value")) else 0
        self.data["lowspeed"] = lowspeed
        self.setDriver("GV2", lowspeed)
        store_values(self)
        LOGGER.debug("Exit")

    def query(self, command=None):
        """Reports the current state of all drivers to the ISY."""
        LOGGER.info(f"{self.lpfx}, {command}")
        self.reportDrivers()
        LOGGER.debug("Exit")

    hint = "0x01120100"
    # home, barrier, None
    # Hints See: https://github.com/UniversalDevicesInc/hints

    """
    UOMs:
    2: boolean
    25: index
    100: A Level from 0-255, used here as 0-100

    Driver controls:
    ST: Status (Unknown, In Progress, Done)
    GV0: Custom Control 0 (target position)
    GV1: Custom Control 1 (target orientation)
    GV2: Custom Control 2 (low speed)
    """
    drivers = [
        {"driver": "ST", "value": STATUS_UNKNOWN, "uom": 25, "name": "Status"},
        {"driver": "GV0", "value": 0, "uom": 100, "name": "Position"},
        {"driver": "GV1", "value": 0, "uom": 100, "name": "Orientation"},
        {"driver": "GV2", "value": 0, "uom": 2, "name": "Low Speed"},
    ]

    """
    Commands that this node can handle.
    Should match the 'accepts' section of the nodedef file.
    """
    commands = {
        "OPEN": open_cmd,
        "CLOSE": close_cmd,
        "STOP": stop_cmd,
        "SETPOS": set_position_cmd,
        "ROTATE": rotate_cmd,
        "SETPOSROT": set_position_rotation_cmd,
        "WINK": wink_cmd,
        "LOWSPEED": set_lowspeed_cmd,
        "QUERY": query,
    }
