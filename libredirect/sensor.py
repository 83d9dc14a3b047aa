# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT

import abc
import dataclasses
import datetime
import importlib
import inspect
import re
from collections.abc import Sequence
from typing import Optional

from libredirect import common, transport
from libredirect.support import identity_store

# Advertised names of the supported sensors, and the module implementing them.
_FAMILIES = (("libre2", re.compile(r"^abbott", re.IGNORECASE)),)


class SensorFamily(abc.ABC):
    manufacturer: str
    service_uuids: Sequence[str]
    write_characteristic_uuid: str
    read_characteristic_uuid: str

    def __init__(self, store: identity_store.IdentityStore) -> None:
        self._store = store

    def is_paired(self) -> bool:
        return self._store.is_paired()

    @abc.abstractmethod
    def can_support_peripheral(
        self, peripheral: transport.Peripheral, advertisement: transport.Advertisement
    ) -> bool:
        """Whether the advertising peripheral is the paired sensor."""
        pass

    @abc.abstractmethod
    def unlock_payload(self, enable_time: Optional[int] = None) -> bytes:
        """Return the payload enabling BLE streaming, counting the attempt."""
        pass

    @abc.abstractmethod
    def decode_packet(
        self, packet: bytes, now: Optional[datetime.datetime] = None
    ) -> common.SensorData:
        pass


@dataclasses.dataclass
class Family:
    sensor: type[SensorFamily]
    help: str


def load_family(family_name: str) -> Family:
    family_module = importlib.import_module(f"libredirect.sensors.{family_name}")
    help_string = inspect.getdoc(family_module)
    assert help_string is not None

    return Family(getattr(family_module, "Sensor"), help_string)


def family_for_name(name: Optional[str]) -> Optional[Family]:
    """Find the sensor family advertising with the given name, if any."""
    if not name:
        return None

    for family_name, pattern in _FAMILIES:
        if pattern.search(name):
            return load_family(family_name)

    return None
