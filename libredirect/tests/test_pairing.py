# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Tests for the pairing link."""

# pylint: disable=protected-access,missing-docstring

from unittest import mock

from absl.testing import absltest

from libredirect import common, exceptions, pairing
from libredirect.support import identity_store, libre2

_SENSOR_UID = b"\xaa\xbb\xcc\xdd\xee\xff\x07\xe0"
_PATCH_INFO = b"\x9d\x08\x30\x01\x76\x25"
_CALIBRATION = common.SensorCalibration(i1=5, i2=300, i3=-25, i4=6500, i5=2048, i6=8000)


def _make_encrypted_fram(patch_info=_PATCH_INFO):
    fram = bytearray(libre2.FRAM_SIZE)
    fram[2:4] = (_CALIBRATION.i1 | _CALIBRATION.i2 << 3).to_bytes(2, "little")
    fram[4] = common.SensorState.READY.value
    fram[0x150:0x158] = (
        25
        | _CALIBRATION.i4 << 8
        | 1 << 33
        | (_CALIBRATION.i5 >> 2) << 40
        | (_CALIBRATION.i6 >> 2) << 52
    ).to_bytes(8, "little")
    return libre2.encrypt_fram(_SENSOR_UID, patch_info, bytes(fram))


class TestPairingLink(absltest.TestCase):
    def setUp(self):
        super().setUp()
        self.store = identity_store.InMemoryIdentityStore()
        self.on_paired = mock.Mock()
        self.on_error = mock.Mock()
        self.link = pairing.PairingLink(
            self.store, on_paired=self.on_paired, on_error=self.on_error
        )

    def test_pairing(self):
        self.link.received_identity(_SENSOR_UID, _PATCH_INFO)
        self.assertFalse(self.link.is_paired())
        self.on_paired.assert_not_called()

        self.link.received_fram(_make_encrypted_fram())

        self.assertTrue(self.link.is_paired())
        self.assertEqual(_CALIBRATION, self.store.calibration)
        self.assertEqual(common.SensorState.READY, self.store.state)
        self.on_paired.assert_called_once_with()

    def test_fram_without_identity(self):
        with self.assertRaises(exceptions.PairingFailed):
            self.link.received_fram(_make_encrypted_fram())
        self.assertFalse(self.link.is_paired())

    def test_invalid_fram(self):
        self.link.received_identity(_SENSOR_UID, _PATCH_INFO)

        with self.assertRaises(exceptions.PairingFailed):
            self.link.received_fram(b"\x00" * 100)

        self.assertIsNone(self.store.identity())
        self.on_paired.assert_not_called()

    def test_new_identity_clears_previous(self):
        self.link.received_identity(_SENSOR_UID, _PATCH_INFO)
        self.link.received_fram(_make_encrypted_fram())

        self.link.received_identity(b"\x01\x02\x03\x04\x05\x06\x07\xe0", _PATCH_INFO)

        self.assertFalse(self.link.is_paired())
        self.assertIsNone(self.store.calibration)

    def test_streaming_enabled(self):
        self.store.unlock_count = 12

        self.link.streaming_enabled(False)
        self.assertEqual(12, self.store.unlock_count)

        self.link.streaming_enabled(True)
        self.assertEqual(0, self.store.unlock_count)

    def test_failed(self):
        self.link.received_identity(_SENSOR_UID, _PATCH_INFO)
        error = exceptions.PairingFailed("NFC read failed.")

        self.link.failed(error)

        self.assertIsNone(self.store.identity())
        self.on_error.assert_called_once_with(error)

    def test_reset(self):
        self.link.received_identity(_SENSOR_UID, _PATCH_INFO)
        self.link.received_fram(_make_encrypted_fram())
        self.store.unlock_count = 3

        self.link.reset()

        self.assertFalse(self.link.is_paired())
        self.assertEqual(3, self.store.unlock_count)

    def test_setup_without_session(self):
        self.link.setup()
        self.assertFalse(self.link.in_progress)

    def test_setup_starts_session(self):
        session = mock.Mock(spec=pairing.PairingSession)
        link = pairing.PairingLink(self.store, session_factory=lambda: session)

        link.setup()
        link.setup()

        session.start.assert_called_once_with(link)
        self.assertTrue(link.in_progress)

        link.finished()
        self.assertFalse(link.in_progress)

    def test_setup_when_paired(self):
        self.link.received_identity(_SENSOR_UID, _PATCH_INFO)
        self.link.received_fram(_make_encrypted_fram())
        session_factory = mock.Mock()
        link = pairing.PairingLink(self.store, session_factory=session_factory)

        link.setup()

        session_factory.assert_not_called()


class TestCapturedPairingSession(absltest.TestCase):
    def setUp(self):
        super().setUp()
        self.store = identity_store.InMemoryIdentityStore()
        self.store.unlock_count = 5
        self.on_paired = mock.Mock()
        self.on_error = mock.Mock()

    def _link(self, session):
        return pairing.PairingLink(
            self.store,
            session_factory=lambda: session,
            on_paired=self.on_paired,
            on_error=self.on_error,
        )

    def test_success(self):
        link = self._link(
            pairing.CapturedPairingSession(
                _SENSOR_UID, _PATCH_INFO, _make_encrypted_fram()
            )
        )

        link.setup()

        self.assertTrue(link.is_paired())
        self.assertFalse(link.in_progress)
        self.assertEqual(0, self.store.unlock_count)
        self.on_paired.assert_called_once_with()
        self.on_error.assert_not_called()

    def test_unsupported_sensor(self):
        patch_info = b"\x70\x00\x00\x01\x00\x00"
        link = self._link(
            pairing.CapturedPairingSession(
                _SENSOR_UID, patch_info, bytes(libre2.FRAM_SIZE)
            )
        )

        link.setup()

        self.assertFalse(link.is_paired())
        self.assertFalse(link.in_progress)
        self.assertIsNone(self.store.identity())
        self.assertEqual(5, self.store.unlock_count)
        self.on_paired.assert_not_called()
        self.on_error.assert_called_once()
        self.assertIsInstance(self.on_error.call_args[0][0], exceptions.PairingFailed)


if __name__ == "__main__":
    absltest.main()
