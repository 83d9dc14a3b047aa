# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Sensor family for FreeStyle Libre 2 (European) sensors.

Supported features:
    - pairing with the identity and FRAM read over NFC;
    - unlocking BLE streaming;
    - decrypting the streamed packets, with calibrated trend (last 15 minutes)
      and history (last 45 minutes) measurements.

Expected advertisement: name starting with "ABBOTT", 8 bytes of manufacturer
data carrying the sensor UID.

The sensor needs to be paired first, so that its UID, patch information and
factory calibration are known. Streaming has to have been enabled over NFC by
the same pairing session.
"""

import binascii
import datetime
import logging
from typing import Optional

from libredirect import common, exceptions, sensor, transport
from libredirect.support import libre2

_NAME_PREFIX = "abbott"
_MANUFACTURER_DATA_SIZE = 8


def _significant_uid(sensor_uid: bytes) -> bytes:
    if len(sensor_uid) == 8 and sensor_uid.endswith(libre2.UID_SUFFIX):
        return sensor_uid[:6]
    return sensor_uid


class Sensor(sensor.SensorFamily):
    manufacturer = "Abbott"
    service_uuids = (transport.normalize_uuid("FDE3"),)
    write_characteristic_uuid = transport.normalize_uuid("F001")
    read_characteristic_uuid = transport.normalize_uuid("F002")

    def can_support_peripheral(
        self, peripheral: transport.Peripheral, advertisement: transport.Advertisement
    ) -> bool:
        sensor_uid = self._store.sensor_uid
        if sensor_uid is None:
            return False

        manufacturer_data = advertisement.manufacturer_data
        if (
            manufacturer_data is None
            or len(manufacturer_data) != _MANUFACTURER_DATA_SIZE
        ):
            return False

        if manufacturer_data[2:8] != _significant_uid(sensor_uid):
            return False

        name = advertisement.name or peripheral.name or ""
        return name.lower().startswith(_NAME_PREFIX)

    def unlock_payload(self, enable_time: Optional[int] = None) -> bytes:
        identity = self._store.identity()
        if identity is None:
            raise exceptions.NotPaired()

        if enable_time is None:
            enable_time = libre2.DEFAULT_ENABLE_TIME

        unlock_count = self._store.increment_unlock_count()
        logging.info("unlocking sensor, attempt %d", unlock_count)

        return libre2.streaming_unlock_payload(
            identity.sensor_uid, identity.patch_info, enable_time, unlock_count
        )

    def decode_packet(
        self, packet: bytes, now: Optional[datetime.datetime] = None
    ) -> common.SensorData:
        identity = self._store.identity()
        calibration = self._store.calibration
        if identity is None or calibration is None:
            raise exceptions.NotPaired()

        if identity.sensor_type != common.SensorType.LIBRE2:
            raise exceptions.UnsupportedSensor(identity.sensor_type.value)

        plaintext = libre2.decrypt_ble_packet(identity.sensor_uid, packet)
        measurements = libre2.parse_measurements(plaintext, calibration, now)
        logging.debug(
            "decoded packet %s, wear time %d minutes",
            binascii.hexlify(plaintext),
            measurements.wear_time_minutes,
        )

        return common.SensorData(
            plaintext=plaintext,
            sensor_uid=identity.sensor_uid,
            patch_info=identity.patch_info,
            calibration=calibration,
            wear_time_minutes=measurements.wear_time_minutes,
            trend=measurements.trend,
            history=measurements.history,
        )
