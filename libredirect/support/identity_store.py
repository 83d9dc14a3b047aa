# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Persistent storage of the paired sensor's identity.

The store holds everything that needs to survive a restart of the process:
the identity read over NFC, the decoded calibration and state, the unlock
counter and the last seen wear time.

Every field is read and written atomically. A missing field reads as None and
means that the sensor is not (fully) paired yet.
"""

import abc
import binascii
import json
import logging
import os
import pathlib
import tempfile
import threading
from typing import Any, Optional, Union

import attr

from libredirect import common

_SENSOR_UID = "sensor_uid"
_PATCH_INFO = "patch_info"
_CALIBRATION = "calibration"
_STATE = "state"
_UNLOCK_COUNT = "unlock_count"
_LAST_WEAR_TIME = "last_wear_time_minutes"

_IDENTITY_KEYS = (_SENSOR_UID, _PATCH_INFO, _CALIBRATION, _STATE)


class IdentityStore(abc.ABC):
    """Base class for the sensor identity stores.

    Subclasses only need to provide storage for JSON-compatible values; the
    conversion from and to the sensor data types happens here.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abc.abstractmethod
    def _load(self, key: str) -> Any:
        pass

    @abc.abstractmethod
    def _store(self, key: str, value: Any) -> None:
        pass

    @abc.abstractmethod
    def _remove(self, key: str) -> None:
        pass

    def _get(self, key: str) -> Any:
        with self._lock:
            return self._load(key)

    def _set(self, key: str, value: Any) -> None:
        with self._lock:
            if value is None:
                self._remove(key)
            else:
                self._store(key, value)

    def _get_bytes(self, key: str) -> Optional[bytes]:
        value = self._get(key)
        return binascii.unhexlify(value) if value is not None else None

    def _set_bytes(self, key: str, value: Optional[bytes]) -> None:
        self._set(key, binascii.hexlify(value).decode("ascii") if value else None)

    @property
    def sensor_uid(self) -> Optional[bytes]:
        return self._get_bytes(_SENSOR_UID)

    @sensor_uid.setter
    def sensor_uid(self, value: Optional[bytes]) -> None:
        self._set_bytes(_SENSOR_UID, value)

    @property
    def patch_info(self) -> Optional[bytes]:
        return self._get_bytes(_PATCH_INFO)

    @patch_info.setter
    def patch_info(self, value: Optional[bytes]) -> None:
        self._set_bytes(_PATCH_INFO, value)

    @property
    def calibration(self) -> Optional[common.SensorCalibration]:
        value = self._get(_CALIBRATION)
        return common.SensorCalibration(**value) if value is not None else None

    @calibration.setter
    def calibration(self, value: Optional[common.SensorCalibration]) -> None:
        self._set(_CALIBRATION, attr.asdict(value) if value is not None else None)

    @property
    def state(self) -> Optional[common.SensorState]:
        value = self._get(_STATE)
        return common.SensorState.from_byte(value) if value is not None else None

    @state.setter
    def state(self, value: Optional[common.SensorState]) -> None:
        self._set(_STATE, value.value if value is not None else None)

    @property
    def unlock_count(self) -> int:
        return self._get(_UNLOCK_COUNT) or 0

    @unlock_count.setter
    def unlock_count(self, value: int) -> None:
        self._set(_UNLOCK_COUNT, value & 0xFFFF)

    @property
    def last_wear_time_minutes(self) -> Optional[int]:
        return self._get(_LAST_WEAR_TIME)

    @last_wear_time_minutes.setter
    def last_wear_time_minutes(self, value: Optional[int]) -> None:
        self._set(_LAST_WEAR_TIME, value)

    @property
    def sensor_type(self) -> Optional[common.SensorType]:
        patch_info = self.patch_info
        if patch_info is None:
            return None
        return common.SensorType.from_patch_info(patch_info)

    def identity(self) -> Optional[common.SensorIdentity]:
        with self._lock:
            sensor_uid = self.sensor_uid
            patch_info = self.patch_info

        if sensor_uid is None or patch_info is None:
            return None
        return common.SensorIdentity(sensor_uid, patch_info)

    def is_paired(self) -> bool:
        """Whether identity, calibration and state are all known."""
        with self._lock:
            return all(self._load(key) is not None for key in _IDENTITY_KEYS)

    def increment_unlock_count(self) -> int:
        """Increment the unlock counter, returning the new value."""
        with self._lock:
            count = (self.unlock_count + 1) & 0xFFFF
            self.unlock_count = count
        return count

    def clear_identity(self) -> None:
        """Forget the paired sensor, keeping the unlock counter."""
        with self._lock:
            for key in _IDENTITY_KEYS + (_LAST_WEAR_TIME,):
                self._remove(key)

    def reset(self) -> None:
        """Forget the paired sensor entirely, unlock counter included."""
        logging.info("resetting sensor identity")
        with self._lock:
            self.clear_identity()
            self.unlock_count = 0


class InMemoryIdentityStore(IdentityStore):
    def __init__(self) -> None:
        super().__init__()
        self._values: dict[str, Any] = {}

    def _load(self, key: str) -> Any:
        return self._values.get(key)

    def _store(self, key: str, value: Any) -> None:
        self._values[key] = value

    def _remove(self, key: str) -> None:
        self._values.pop(key, None)


class JsonFileIdentityStore(IdentityStore):
    """Identity store persisted to a JSON file.

    The file is rewritten on each change, through a temporary file replacing
    the old one, so that a crash never leaves a truncated store behind.
    """

    def __init__(self, path: Union[str, pathlib.Path]) -> None:
        super().__init__()
        self._path = pathlib.Path(path)
        self._values: dict[str, Any] = {}

        if self._path.exists():
            with self._path.open("r", encoding="utf-8") as store_file:
                self._values = json.load(store_file)
            logging.debug("loaded identity store from %s", self._path)

    def _load(self, key: str) -> Any:
        return self._values.get(key)

    def _store(self, key: str, value: Any) -> None:
        self._values[key] = value
        self._flush()

    def _remove(self, key: str) -> None:
        if self._values.pop(key, None) is not None:
            self._flush()

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        descriptor, temporary_path = tempfile.mkstemp(
            dir=self._path.parent, prefix=self._path.name, suffix=".tmp"
        )
        try:
            with os.fdopen(descriptor, "w", encoding="utf-8") as store_file:
                json.dump(self._values, store_file, indent=2, sort_keys=True)
            os.replace(temporary_path, self._path)
        except BaseException:
            os.unlink(temporary_path)
            raise
