# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Tests for the libredirect command line utility."""

# pylint: disable=protected-access,missing-docstring

import binascii
import contextlib
import io
import os
import sys
from unittest import mock

from absl.testing import absltest

from libredirect import common, libredirect
from libredirect.support import identity_store, libre2

_SENSOR_UID = b"\xaa\xbb\xcc\xdd\xee\xff\x07\xe0"
_PATCH_INFO = b"\x9d\x08\x30\x01\x76\x25"


def _hex(value):
    return binascii.hexlify(value).decode("ascii")


def _make_encrypted_fram():
    fram = bytearray(libre2.FRAM_SIZE)
    fram[4] = common.SensorState.READY.value
    fram[0x150:0x158] = (6500 << 8).to_bytes(8, "little")
    return libre2.encrypt_fram(_SENSOR_UID, _PATCH_INFO, bytes(fram))


class TestCommandLine(absltest.TestCase):
    def setUp(self):
        super().setUp()
        self.tempdir = self.create_tempdir().full_path
        self.store_path = os.path.join(self.tempdir, "sensor.json")
        self.fram_path = os.path.join(self.tempdir, "fram.bin")
        with open(self.fram_path, "wb") as fram_file:
            fram_file.write(_make_encrypted_fram())

    def _run(self, *argv):
        output = io.StringIO()
        with mock.patch.object(
            sys, "argv", ["libredirect", "--store", self.store_path, *argv]
        ), contextlib.redirect_stdout(output):
            result = libredirect.main()
        return result, output.getvalue()

    def _pair(self):
        return self._run(
            "pair",
            "--uid",
            _hex(_SENSOR_UID),
            "--patch-info",
            _hex(_PATCH_INFO),
            "--fram",
            self.fram_path,
        )

    def _store(self):
        return identity_store.JsonFileIdentityStore(self.store_path)

    def test_help(self):
        result, output = self._run("help")

        self.assertEqual(0, result)
        self.assertIn("FreeStyle Libre 2", output)

    def test_no_action(self):
        result, output = self._run()

        self.assertEqual(0, result)
        self.assertIn("FreeStyle Libre 2", output)

    def test_info_not_paired(self):
        result, output = self._run("info")

        self.assertEqual(1, result)
        self.assertIn("Error while executing 'info'", output)

    def test_pair(self):
        result, output = self._pair()

        self.assertEqual(0, result)
        self.assertIn(f"Sensor UID: {_hex(_SENSOR_UID)}", output)
        self.assertIn("Type: Libre 2", output)
        self.assertIn("Paired: yes", output)

        store = self._store()
        self.assertTrue(store.is_paired())
        self.assertEqual(common.SensorState.READY, store.state)
        self.assertEqual(0, store.unlock_count)

    def test_pair_invalid_hex(self):
        result, output = self._run(
            "pair", "--uid", "xyz", "--patch-info", "00", "--fram", self.fram_path
        )

        self.assertEqual(1, result)
        self.assertIn("not a valid hex string", output)

    def test_pair_invalid_fram(self):
        with open(self.fram_path, "wb") as fram_file:
            fram_file.write(b"\x00" * 100)

        result, output = self._pair()

        self.assertEqual(1, result)
        self.assertIn("Error while executing 'pair'", output)
        self.assertFalse(self._store().is_paired())

    def test_unlock(self):
        self._pair()

        result, output = self._run("unlock")

        self.assertEqual(0, result)
        self.assertEqual(
            _hex(libre2.streaming_unlock_payload(_SENSOR_UID, _PATCH_INFO, 42, 1)),
            output.strip(),
        )
        self.assertEqual(1, self._store().unlock_count)

    def test_unlock_not_paired(self):
        result, output = self._run("unlock")

        self.assertEqual(1, result)
        self.assertIn("Error while executing 'unlock'", output)

    def test_decode(self):
        self._pair()
        payload = (11000).to_bytes(4, "little") * 10 + (1000).to_bytes(2, "little")
        packet = libre2.encrypt_ble_packet(_SENSOR_UID, payload, b"\x10\x20")

        result, output = self._run("decode", _hex(packet))

        self.assertEqual(0, result)
        self.assertIn("Wear Time: 1000 minutes", output)
        csv_lines = [line for line in output.splitlines() if line.startswith('"')]
        self.assertLen(csv_lines, 10)
        self.assertIn('"110.00"', csv_lines[-1])

    def test_decode_mmol(self):
        self._pair()
        payload = (18000).to_bytes(4, "little") * 10 + (1000).to_bytes(2, "little")
        packet = libre2.encrypt_ble_packet(_SENSOR_UID, payload, b"\x10\x20")

        result, output = self._run("decode", "--unit", "mmol/L", _hex(packet))

        self.assertEqual(0, result)
        self.assertIn('"10.00"', output.splitlines()[-1])

    def test_decode_corrupted(self):
        self._pair()
        payload = (11000).to_bytes(4, "little") * 10 + (1000).to_bytes(2, "little")
        packet = bytearray(libre2.encrypt_ble_packet(_SENSOR_UID, payload, b"\x10\x20"))
        packet[30] ^= 0x01

        result, output = self._run("decode", _hex(packet))

        self.assertEqual(1, result)
        self.assertIn("Error while executing 'decode'", output)

    def test_reset_confirmed(self):
        self._pair()

        with mock.patch("builtins.input", return_value="y"):
            result, output = self._run("reset")

        self.assertEqual(0, result)
        self.assertIn("Sensor identity cleared.", output)
        self.assertFalse(self._store().is_paired())

    def test_reset_declined(self):
        self._pair()

        with mock.patch("builtins.input", return_value="n"):
            result, _ = self._run("reset")

        self.assertEqual(1, result)
        self.assertTrue(self._store().is_paired())

    def test_stream_not_paired(self):
        result, output = self._run("stream")

        self.assertEqual(1, result)
        self.assertIn("Error while executing 'stream'", output)


if __name__ == "__main__":
    absltest.main()
