#!/usr/bin/env python3
"""
This is a Plugin/NodeServer for Polyglot v3 written in Python3
modified from v3 template version by (Bob Paauwe) bpaauwe@yahoo.com
It is an interface between Somfy TaHoma shutters and Polyglot for EISY/Polisy

udi-Tahoma-pg3 NodeServer/Plugin for EISY/Polisy

(C) 2025 Stephen Jenkins

"""

# std libraries
import sys

# external libraries
from udi_interface import LOGGER, Interface

# nodes
from nodes import Controller

VERSION = "1.0.0"
"""
1.0.0
DONE shutter node: open, close, stop, position, rotation, position & rotation, wink
DONE low speed positioning preference per shutter
DONE follow gateway executions until complete, status In Progress / Done / Unknown
DONE shared gateway client & event loop on controller
DONE devices from custom params or YAML devfile
DONE testing added
"""

if __name__ == "__main__":
    polyglot = None
    try:
        """
        Instantiates the Interface to Polyglot.
        """
        polyglot = Interface([])
        """
        Starts MQTT and connects to Polyglot.
        """
        polyglot.start(VERSION)
        polyglot.updateProfile()

        """
        Creates the Controller Node and passes in the Interface, the node's
        parent address, node's address, and name/title

        * use 'controller' for both parent and address and PG3 will be able
          to automatically update node server status
        """
        control = Controller(
            polyglot, "controller", "controller", "TaHoma Controller"
        )

        """
        Sits around and does nothing forever, keeping your program running.
        """
        polyglot.runForever()
    except (KeyboardInterrupt, SystemExit):
        LOGGER.warning("Received interrupt or exit...")
        """
        Catch SIGTERM or Control-C and exit cleanly.
        """
        if polyglot is not None:
            polyglot.stop()
    except Exception as err:
        LOGGER.error(f"Exception: {err}", exc_info=True)
    sys.exit(0)
