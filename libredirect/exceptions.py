# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Common exceptions for libredirect."""

from typing import Any, Optional


class Error(Exception):
    """Base class for the errors."""


class CommandLineError(Error):
    """Error with commandline parameters provided."""


class ConnectionFailed(Error):
    """It was not possible to connect to the sensor."""

    def __init__(self, message: str = "Unable to connect to the sensor.") -> None:
        super().__init__(message)


class CommandError(Error):
    """It was not possible to send a command to the sensor."""

    def __init__(self, message: str = "Unable to send command to sensor.") -> None:
        super().__init__(message)


class InvalidResponse(Error):
    """The data received from the sensor was not understood"""

    def __init__(self, response: str) -> None:
        super().__init__(f"Invalid response received:\n{response}")


class InvalidChecksum(InvalidResponse):
    def __init__(self, wire: int, calculated: Optional[int]) -> None:
        if calculated is not None:
            message = f"Packet checksum not matching: {wire:04x} (wire) != {calculated:04x} (calculated)"
        else:
            message = f"Unable to calculate checksum. Expected {wire:04x}."

        super().__init__(message)


class InvalidPacketLength(InvalidResponse):
    """The data does not have the fixed length of its layout."""

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"Expected {expected} bytes, received {received}.")


class UnsupportedSensor(Error):
    """The paired sensor is not of a family this code can decode."""

    def __init__(self, sensor_type: Any) -> None:
        super().__init__(f"Unsupported sensor type: {sensor_type}")


class PairingFailed(Error):
    """The pairing session did not produce a usable identity."""

    def __init__(self, message: str = "Unable to pair with the sensor.") -> None:
        super().__init__(message)


class NotPaired(Error):
    """The requested operation needs a complete sensor identity."""

    def __init__(self) -> None:
        super().__init__("No sensor paired, please pair a sensor first.")
