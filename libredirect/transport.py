# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Interface between the connection manager and a BLE central driver.

Transport commands never block: they return immediately and their completion
is reported later through the matching TransportDelegate callback, from
whichever thread the driver uses. Errors are reported to the callbacks rather
than raised.
"""

import abc
from collections.abc import Sequence
from typing import Optional

import attr

_BLUETOOTH_BASE_UUID = "0000{:04x}-0000-1000-8000-00805f9b34fb"


def normalize_uuid(uuid: str) -> str:
    """Expand 16-bit UUIDs to the full Bluetooth base UUID form."""
    if len(uuid) == 4:
        return _BLUETOOTH_BASE_UUID.format(int(uuid, 16))
    return uuid.lower()


@attr.s(auto_attribs=True, frozen=True)
class Peripheral:
    identifier: str
    name: Optional[str] = None


@attr.s(auto_attribs=True, frozen=True)
class Advertisement:
    """Advertisement data of a peripheral.

    Attributes:
      manufacturer_data: Manufacturer specific data, including the two bytes of
        the company identifier, as it appears on air.
    """

    name: Optional[str] = None
    manufacturer_data: Optional[bytes] = None
    rssi: Optional[int] = None


class TransportDelegate(abc.ABC):
    @abc.abstractmethod
    def did_update_power_state(self, powered_on: bool) -> None:
        pass

    @abc.abstractmethod
    def did_discover(
        self, peripheral: Peripheral, advertisement: Advertisement
    ) -> None:
        pass

    @abc.abstractmethod
    def did_connect(self, peripheral: Peripheral) -> None:
        pass

    @abc.abstractmethod
    def did_fail_to_connect(
        self, peripheral: Peripheral, error: Optional[Exception]
    ) -> None:
        pass

    @abc.abstractmethod
    def did_disconnect(
        self, peripheral: Peripheral, error: Optional[Exception]
    ) -> None:
        pass

    @abc.abstractmethod
    def did_discover_services(
        self,
        peripheral: Peripheral,
        services: Sequence[str],
        error: Optional[Exception],
    ) -> None:
        pass

    @abc.abstractmethod
    def did_discover_characteristics(
        self,
        peripheral: Peripheral,
        service: str,
        characteristics: Sequence[str],
        error: Optional[Exception],
    ) -> None:
        pass

    @abc.abstractmethod
    def did_write_value(
        self, peripheral: Peripheral, characteristic: str, error: Optional[Exception]
    ) -> None:
        pass

    @abc.abstractmethod
    def did_update_notification_state(
        self, peripheral: Peripheral, characteristic: str, error: Optional[Exception]
    ) -> None:
        pass

    @abc.abstractmethod
    def did_update_value(
        self,
        peripheral: Peripheral,
        characteristic: str,
        value: bytes,
        error: Optional[Exception],
    ) -> None:
        pass


class Transport(abc.ABC):
    @abc.abstractmethod
    def start(self, delegate: TransportDelegate) -> None:
        """Start the driver, reporting the radio state to the delegate."""
        pass

    @property
    @abc.abstractmethod
    def is_scanning(self) -> bool:
        pass

    @abc.abstractmethod
    def scan(self) -> None:
        pass

    @abc.abstractmethod
    def stop_scan(self) -> None:
        pass

    @abc.abstractmethod
    def connect(self, peripheral: Peripheral) -> None:
        pass

    @abc.abstractmethod
    def cancel_connection(self, peripheral: Peripheral) -> None:
        """Disconnect, reporting a disconnection without error."""
        pass

    @abc.abstractmethod
    def discover_services(
        self, peripheral: Peripheral, service_uuids: Sequence[str]
    ) -> None:
        pass

    @abc.abstractmethod
    def discover_characteristics(self, peripheral: Peripheral, service: str) -> None:
        pass

    @abc.abstractmethod
    def write(
        self,
        peripheral: Peripheral,
        characteristic: str,
        data: bytes,
        with_response: bool = True,
    ) -> None:
        pass

    @abc.abstractmethod
    def set_notify(
        self, peripheral: Peripheral, characteristic: str, enabled: bool
    ) -> None:
        pass

    def close(self) -> None:
        pass
