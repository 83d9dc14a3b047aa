# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Tests for the FreeStyle Libre 2 sensor family."""

# pylint: disable=protected-access,missing-docstring

import datetime

from absl.testing import absltest, parameterized

from libredirect import common, exceptions, transport
from libredirect.sensors import libre2
from libredirect.support import identity_store
from libredirect.support import libre2 as libre2_crypto

_SENSOR_UID = b"\xaa\xbb\xcc\xdd\xee\xff"
_PATCH_INFO = b"\x9d\x08\x30\x01\x76\x25"
_LINEAR_CALIBRATION = common.SensorCalibration(
    i1=0, i2=0, i3=0, i4=6500, i5=0, i6=0
)
_NOW = datetime.datetime(2021, 6, 1, 12, 0)
_PERIPHERAL = transport.Peripheral("00:11:22:33:44:55", "ABBOTT1234")


def _advertisement(manufacturer_data, name="ABBOTT1234"):
    return transport.Advertisement(name=name, manufacturer_data=manufacturer_data)


def _make_packet(raw_glucose=10000, wear_time_minutes=2000):
    sample = raw_glucose.to_bytes(4, "little")
    payload = sample * 10 + wear_time_minutes.to_bytes(2, "little")
    return libre2_crypto.encrypt_ble_packet(_SENSOR_UID, payload, b"\xab\xcd")


class TestSensor(parameterized.TestCase):
    def setUp(self):
        super().setUp()
        self.store = identity_store.InMemoryIdentityStore()
        self.store.sensor_uid = _SENSOR_UID
        self.store.patch_info = _PATCH_INFO
        self.store.calibration = _LINEAR_CALIBRATION
        self.store.state = common.SensorState.READY
        self.sensor = libre2.Sensor(self.store)

    def test_characteristics(self):
        self.assertEqual(
            ("0000fde3-0000-1000-8000-00805f9b34fb",), tuple(self.sensor.service_uuids)
        )
        self.assertEqual(
            "0000f001-0000-1000-8000-00805f9b34fb",
            self.sensor.write_characteristic_uuid,
        )
        self.assertEqual(
            "0000f002-0000-1000-8000-00805f9b34fb",
            self.sensor.read_characteristic_uuid,
        )

    def test_is_paired(self):
        self.assertTrue(self.sensor.is_paired())
        self.store.clear_identity()
        self.assertFalse(self.sensor.is_paired())

    @parameterized.parameters(_SENSOR_UID, _SENSOR_UID + b"\x07\xe0")
    def test_matching_peripheral(self, sensor_uid):
        self.store.sensor_uid = sensor_uid
        self.assertTrue(
            self.sensor.can_support_peripheral(
                _PERIPHERAL, _advertisement(b"\x01\x02" + _SENSOR_UID)
            )
        )

    @parameterized.named_parameters(
        ("uid_mismatch", b"\x01\x02\xaa\xbb\xcc\xdd\xee\x00", "ABBOTT1234"),
        ("short_data", b"\xaa\xbb\xcc\xdd\xee\xff", "ABBOTT1234"),
        ("long_data", b"\x01\x02" + _SENSOR_UID + b"\x00", "ABBOTT1234"),
        ("no_data", None, "ABBOTT1234"),
        ("name_prefix", b"\x01\x02" + _SENSOR_UID, "DEXCOM1234"),
        ("name_missing", b"\x01\x02" + _SENSOR_UID, None),
    )
    def test_not_matching_peripheral(self, manufacturer_data, name):
        self.assertFalse(
            self.sensor.can_support_peripheral(
                transport.Peripheral("00:11:22:33:44:55", name),
                _advertisement(manufacturer_data, name),
            )
        )

    def test_name_case_insensitive(self):
        self.assertTrue(
            self.sensor.can_support_peripheral(
                _PERIPHERAL, _advertisement(b"\x01\x02" + _SENSOR_UID, "abbott42")
            )
        )

    def test_not_paired_peripheral(self):
        self.store.reset()
        self.assertFalse(
            self.sensor.can_support_peripheral(
                _PERIPHERAL, _advertisement(b"\x01\x02" + _SENSOR_UID)
            )
        )

    def test_unlock_payload_counts(self):
        first = self.sensor.unlock_payload()
        second = self.sensor.unlock_payload()

        self.assertEqual(2, self.store.unlock_count)
        self.assertEqual(
            libre2_crypto.streaming_unlock_payload(_SENSOR_UID, _PATCH_INFO, 42, 1),
            first,
        )
        self.assertEqual(
            libre2_crypto.streaming_unlock_payload(_SENSOR_UID, _PATCH_INFO, 42, 2),
            second,
        )

    def test_unlock_payload_enable_time(self):
        payload = self.sensor.unlock_payload(100)
        self.assertEqual((101).to_bytes(4, "little"), payload[:4])

    def test_unlock_payload_not_paired(self):
        self.store.reset()
        with self.assertRaises(exceptions.NotPaired):
            self.sensor.unlock_payload()
        self.assertEqual(0, self.store.unlock_count)

    def test_decode_packet(self):
        data = self.sensor.decode_packet(_make_packet(), _NOW)

        self.assertEqual(_SENSOR_UID, data.sensor_uid)
        self.assertEqual(_PATCH_INFO, data.patch_info)
        self.assertEqual(_LINEAR_CALIBRATION, data.calibration)
        self.assertEqual(2000, data.wear_time_minutes)
        self.assertLen(data.plaintext, libre2_crypto.BLE_PLAINTEXT_SIZE)
        self.assertLen(data.trend, 7)
        self.assertLen(data.history, 3)
        self.assertEqual(100.0, data.latest.value)
        self.assertEqual(_NOW, data.latest.timestamp)

    def test_decode_packet_checksum(self):
        packet = bytearray(_make_packet())
        packet[10] ^= 0xFF

        with self.assertRaises(exceptions.InvalidChecksum):
            self.sensor.decode_packet(bytes(packet), _NOW)

    @parameterized.parameters(
        b"\xe5\x00\x03\x02\x86\x21",
        b"\x76\x00\x00\x02\x00\x00",
        b"\x76\x00\x00\x04\x00\x00",
        b"\xdf\x00\x00\x01\x00\x00",
    )
    def test_decode_packet_unsupported(self, patch_info):
        self.store.patch_info = patch_info
        with self.assertRaises(exceptions.UnsupportedSensor):
            self.sensor.decode_packet(_make_packet(), _NOW)

    def test_decode_packet_not_paired(self):
        self.store.reset()
        with self.assertRaises(exceptions.NotPaired):
            self.sensor.decode_packet(_make_packet(), _NOW)


if __name__ == "__main__":
    absltest.main()
