"""
udi-Tahoma-pg3 NodeServer/Plugin for EISY/Polisy

(C) 2025 Stephen Jenkins

Shared node helpers: field specs, persistence, configuration lookup.
"""

# standard imports
import re
from typing import Any, Dict, Optional
from dataclasses import dataclass

# external imports
from udi_interface import LOGGER

@dataclass(frozen=True)
class FieldSpec:
    driver: Optional[str]  # e.g., "GV1" or None if not pushed to a driver
    default: Any           # per-field default
    data_type: str         # denote data type (state or config)
    def should_update(self) -> bool:
            """Return True if this field should be pushed to a driver."""
            return self.driver is not None and self.data_type == "state"

# Single source of truth for field names, driver codes, and defaults
# below is an example
    # FIELDS: dict[str, FieldSpec] = {
    #     #State variables (pushed to drivers)
    #     "status":         FieldSpec(driver="ST", default=0, data_type="state"),
    #     "device":         FieldSpec(driver=None, default="", data_type="config"),
    # }


def get_valid_node_address(name,max_length=14):
    offset = max_length * -1
    # Only allow utf-8 characters
    #  https://stackoverflow.com/questions/26541968/delete-every-non-utf-8-symbols-froms-string
    name = bytes(name, 'utf-8').decode('utf-8','ignore')
    # Remove <>`~!@#$%^&*(){}[]?/\;:"'` characters from name
    sname = re.sub(r"[<>`~!@#$%^&*(){}[\]?/\\;:\"']+", "", name)
    # And return last part of name of over max_length
    return sname[offset:].lower()


def load_persistent_data(self, FIELDS) -> None:
    """
    Load state from Polyglot persistence, falling back to defaults.
    """
    data = self.controller.Data.get(self.name)

    if data is not None:
        _apply_state(self, data, FIELDS)
        LOGGER.info("%s, Loaded from persistence", self.name)
    else:
        _apply_state(self, {}, FIELDS)  # initialize from defaults
        LOGGER.info("%s, No persistent data found, using defaults.", self.name)

    # Persist and push drivers
    store_values(self)
    _push_drivers(self, FIELDS)


def _apply_state(self, src: Dict[str, Any], FIELDS) -> None:
    """
    Apply values from src; fall back to per-instance defaults
    """
    for field in FIELDS.keys():
        self.data[field] = src.get(field, self.data[field])


def get_config_data(self, FIELDS) -> bool:
    """
    Find this node's device entry in the controller devlist and apply
    its configuration fields.  Config always wins over persisted values.
    """
    devlist = getattr(self.controller, "devlist", None) or []
    self.dev = next(
        (
            dev
            for dev in devlist
            if get_valid_node_address(str(dev.get("id"))) == self.address
        ),
        None,
    )
    if self.dev is None:
        LOGGER.error(f"{self.name}: no configuration found for address {self.address}")
        return False

    for field, spec in FIELDS.items():
        if spec.data_type == "config" and field in self.dev:
            self.data[field] = self.dev[field]
    LOGGER.debug(f"{self.name}: config {self.dev}")
    return True


def store_values(self) -> None:
    """
    Store persistent data to Polyglot Data structure.
    """
    self.controller.Data[self.name] = self.data


def _push_drivers(self, FIELDS) -> None:
    """
    Push only fields that have a driver mapping
    """
    for field, spec in FIELDS.items():
        if spec.should_update():
            self.setDriver(spec.driver, self.data[field], report=True, force=True)
