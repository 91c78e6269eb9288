"""Tests for the node_funcs utility module.

(C) 2025 Stephen Jenkins
"""

import pytest
from unittest.mock import Mock, patch

from utils.node_funcs import (
    FieldSpec,
    get_config_data,
    get_valid_node_address,
    load_persistent_data,
    store_values,
    _apply_state,
    _push_drivers,
)


SHUTTER_FIELDS = {
    "status": FieldSpec(driver="ST", default=0, data_type="state"),
    "position": FieldSpec(driver="GV0", default=0, data_type="state"),
    "lowspeed": FieldSpec(driver="GV2", default=0, data_type="state"),
    "label": FieldSpec(driver=None, default="", data_type="state"),
    "device": FieldSpec(driver=None, default="", data_type="config"),
}


def make_node(address="1", name="Living Shutter", devlist=None, stored=None):
    node = Mock()
    node.address = address
    node.name = name
    node.data = {field: spec.default for field, spec in SHUTTER_FIELDS.items()}
    node.controller = Mock()
    node.controller.devlist = devlist or []
    node.controller.Data = {} if stored is None else stored
    node.setDriver = Mock()
    return node


class TestFieldSpec:
    """Tests for FieldSpec dataclass."""

    def test_field_spec_creation(self):
        """Test creating a FieldSpec instance."""
        field = FieldSpec(driver="GV1", default=0, data_type="state")

        assert field.driver == "GV1"
        assert field.default == 0
        assert field.data_type == "state"

    def test_field_spec_frozen(self):
        """Test that FieldSpec is immutable (frozen)."""
        field = FieldSpec(driver="GV1", default=0, data_type="state")

        # Frozen dataclass raises FrozenInstanceError on assignment
        with pytest.raises(Exception):  # FrozenInstanceError or AttributeError
            field.driver = "GV2"  # type: ignore

    def test_should_update_true_for_state_with_driver(self):
        """Test should_update returns True for state fields with driver."""
        field = FieldSpec(driver="GV1", default=0, data_type="state")

        assert field.should_update() is True

    def test_should_update_false_for_config(self):
        """Test should_update returns False for config fields."""
        field = FieldSpec(driver="GV1", default=0, data_type="config")

        assert field.should_update() is False

    def test_should_update_false_for_none_driver(self):
        """Test should_update returns False when driver is None."""
        field = FieldSpec(driver=None, default=0, data_type="state")

        assert field.should_update() is False

    def test_field_spec_with_none_driver(self):
        """Test FieldSpec with None driver."""
        field = FieldSpec(driver=None, default="default_value", data_type="config")

        assert field.driver is None
        assert field.default == "default_value"
        assert field.should_update() is False


class TestGetValidNodeAddress:
    """Tests for get_valid_node_address."""

    def test_plain(self):
        assert get_valid_node_address("1") == "1"

    def test_strips_reserved_characters_and_lowers(self):
        assert get_valid_node_address("Kitchen<Blind>!") == "kitchenblind"

    def test_keeps_last_part_when_too_long(self):
        assert get_valid_node_address("abcdefghijklmnopqrstuvwxyz") == "mnopqrstuvwxyz"

    def test_custom_length(self):
        assert get_valid_node_address("shutter42", max_length=4) == "er42"




class TestApplyState:
    """Tests for _apply_state function."""

    def test_apply_state_with_existing_data(self):
        """Test applying state from source data."""
        # Create mock self object
        mock_self = Mock()
        mock_self.data = {"field1": "default1", "field2": "default2"}

        # Create FIELDS
        FIELDS = {
            "field1": FieldSpec(driver="GV1", default="default1", data_type="state"),
            "field2": FieldSpec(driver="GV2", default="default2", data_type="state"),
        }

        # Source data
        src = {"field1": "new_value1", "field2": "new_value2"}

        _apply_state(mock_self, src, FIELDS)

        assert mock_self.data["field1"] == "new_value1"
        assert mock_self.data["field2"] == "new_value2"

    def test_apply_state_uses_defaults_for_missing_fields(self):
        """Test that apply_state uses existing data for missing fields."""
        mock_self = Mock()
        mock_self.data = {"field1": "default1", "field2": "default2"}

        FIELDS = {
            "field1": FieldSpec(driver="GV1", default="default1", data_type="state"),
            "field2": FieldSpec(driver="GV2", default="default2", data_type="state"),
        }

        # Source only has field1
        src = {"field1": "new_value1"}

        _apply_state(mock_self, src, FIELDS)

        assert mock_self.data["field1"] == "new_value1"
        assert mock_self.data["field2"] == "default2"  # Keeps existing value

    def test_apply_state_with_empty_source(self):
        """Test applying state with empty source."""
        mock_self = Mock()
        mock_self.data = {"field1": "default1"}

        FIELDS = {
            "field1": FieldSpec(driver="GV1", default="default1", data_type="state")
        }

        _apply_state(mock_self, {}, FIELDS)

        assert mock_self.data["field1"] == "default1"


class TestStoreValues:
    """Tests for store_values function."""

    def test_store_values_saves_to_controller_data(self):
        """Test that store_values saves data to controller."""
        mock_controller = Mock()
        mock_controller.Data = {}

        mock_self = Mock()
        mock_self.controller = mock_controller
        mock_self.name = "TestNode"
        mock_self.data = {"field1": "value1", "field2": "value2"}

        store_values(mock_self)

        assert mock_controller.Data["TestNode"] == {
            "field1": "value1",
            "field2": "value2",
        }

    def test_store_values_overwrites_existing(self):
        """Test that store_values overwrites existing data."""
        mock_controller = Mock()
        mock_controller.Data = {"TestNode": {"old": "data"}}

        mock_self = Mock()
        mock_self.controller = mock_controller
        mock_self.name = "TestNode"
        mock_self.data = {"new": "data"}

        store_values(mock_self)

        assert mock_controller.Data["TestNode"] == {"new": "data"}


class TestPushDrivers:
    """Tests for _push_drivers function."""

    def test_push_drivers_updates_state_fields(self):
        """Test that _push_drivers updates drivers for state fields."""
        mock_self = Mock()
        mock_self.data = {"state_field": 100, "config_field": 200}
        mock_self.setDriver = Mock()

        FIELDS = {
            "state_field": FieldSpec(driver="GV1", default=0, data_type="state"),
            "config_field": FieldSpec(driver="GV2", default=0, data_type="config"),
        }

        _push_drivers(mock_self, FIELDS)

        # Should only push state field (force=True is the actual behavior)
        mock_self.setDriver.assert_called_once_with("GV1", 100, report=True, force=True)

    def test_push_drivers_skips_none_driver(self):
        """Test that fields with None driver are not pushed."""
        mock_self = Mock()
        mock_self.data = {"field1": 100}
        mock_self.setDriver = Mock()

        FIELDS = {
            "field1": FieldSpec(driver=None, default=0, data_type="state"),
        }

        _push_drivers(mock_self, FIELDS)

        mock_self.setDriver.assert_not_called()

    def test_push_drivers_with_multiple_state_fields(self):
        """Test pushing multiple state fields."""
        mock_self = Mock()
        mock_self.data = {"field1": 10, "field2": 20, "field3": 30}
        mock_self.setDriver = Mock()

        FIELDS = {
            "field1": FieldSpec(driver="GV1", default=0, data_type="state"),
            "field2": FieldSpec(driver="GV2", default=0, data_type="state"),
            "field3": FieldSpec(driver=None, default=0, data_type="state"),
        }

        _push_drivers(mock_self, FIELDS)

        assert mock_self.setDriver.call_count == 2


class TestLoadPersistentData:
    """Tests for load_persistent_data function."""

    @patch("utils.node_funcs._push_drivers")
    @patch("utils.node_funcs.store_values")
    def test_load_persistent_data_from_polyglot(self, mock_store, mock_push):
        """Test loading data from Polyglot persistence."""
        node = make_node(stored={"Living Shutter": {"position": 40, "lowspeed": 1}})

        load_persistent_data(node, SHUTTER_FIELDS)

        assert node.data["position"] == 40
        assert node.data["lowspeed"] == 1
        assert node.data["status"] == 0
        mock_store.assert_called_once_with(node)
        mock_push.assert_called_once_with(node, SHUTTER_FIELDS)

    @patch("utils.node_funcs._push_drivers")
    @patch("utils.node_funcs.store_values")
    def test_load_persistent_data_defaults(self, mock_store, _mock_push):
        """Test loading with no data uses defaults."""
        node = make_node()

        load_persistent_data(node, SHUTTER_FIELDS)

        assert node.data == {field: spec.default for field, spec in SHUTTER_FIELDS.items()}
        mock_store.assert_called_once_with(node)

    def test_load_persistent_data_pushes_state_drivers(self):
        node = make_node(stored={"Living Shutter": {"position": 70}})

        load_persistent_data(node, SHUTTER_FIELDS)

        node.setDriver.assert_any_call("GV0", 70, report=True, force=True)
        assert node.setDriver.call_count == 3
        assert node.controller.Data["Living Shutter"] is node.data


class TestGetConfigData:
    """Tests for get_config_data function."""

    def test_get_config_data_success(self):
        device = "io://1234-5678-9012/12345678"
        node = make_node(
            address="2",
            devlist=[
                {"id": "1", "device": "io://other"},
                {"id": 2, "device": device, "position": 99},
            ],
        )

        assert get_config_data(node, SHUTTER_FIELDS) is True

        assert node.dev["device"] == device
        assert node.data["device"] == device
        # state fields are never taken from config
        assert node.data["position"] == 0

    def test_get_config_data_matches_sanitized_id(self):
        node = make_node(address="kitchenblind", devlist=[{"id": "Kitchen<Blind>"}])
        assert get_config_data(node, SHUTTER_FIELDS) is True
        assert node.dev == {"id": "Kitchen<Blind>"}
        assert node.data["device"] == ""

    def test_get_config_data_no_device_found(self):
        node = make_node(address="3", devlist=[{"id": "1", "device": "io://x"}])
        assert get_config_data(node, SHUTTER_FIELDS) is False
        assert node.dev is None

    def test_get_config_data_without_devlist(self):
        node = make_node()
        node.controller.devlist = None
        assert get_config_data(node, SHUTTER_FIELDS) is False
