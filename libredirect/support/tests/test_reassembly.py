# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Tests for the BLE packet reassembly."""

# pylint: disable=protected-access,missing-docstring

from unittest import mock

from absl.testing import absltest, parameterized

from libredirect import exceptions
from libredirect.support import reassembly


class _FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestPacketAssembler(parameterized.TestCase):
    def setUp(self):
        super().setUp()
        self.decoder = mock.Mock()
        self.on_stall = mock.Mock()
        self.clock = _FakeClock()
        self.assembler = reassembly.PacketAssembler(
            self.decoder, on_stall=self.on_stall, clock=self.clock
        )

    def _feed(self, *sizes):
        value = 0
        for size in sizes:
            self.assembler.append(bytes(range(value, value + size)))
            value += size

    def test_initial_state(self):
        self.assertEqual(reassembly.AssemblerState.IDLE, self.assembler.state)
        self.assertEmpty(self.assembler.buffer)
        self.assertEqual(0, self.assembler.resend_counter)

    def test_complete_packet(self):
        self._feed(20, 18, 8)

        self.decoder.assert_called_once_with(bytes(range(46)))
        self.assertEqual(1, self.assembler.decode_attempts)
        self.assertEqual(reassembly.AssemblerState.IDLE, self.assembler.state)
        self.assertEmpty(self.assembler.buffer)

    def test_partial_packet(self):
        self._feed(20, 18)

        self.decoder.assert_not_called()
        self.assertEqual(0, self.assembler.decode_attempts)
        self.assertEqual(reassembly.AssemblerState.ACCUMULATING, self.assembler.state)
        self.assertLen(self.assembler.buffer, 38)

    @parameterized.parameters(
        ((46,),),
        ((1,) * 46,),
        ((10, 10, 10, 16),),
    )
    def test_fragment_sizes(self, sizes):
        self._feed(*sizes)
        self.decoder.assert_called_once_with(bytes(range(46)))

    def test_consecutive_packets(self):
        self._feed(20, 18, 8, 20, 18, 8)
        self.assertEqual(2, self.decoder.call_count)
        self.assertEqual(2, self.assembler.decode_attempts)

    def test_decode_failure_resets(self):
        self.decoder.side_effect = exceptions.InvalidChecksum(0x1234, 0x4321)
        self.assembler.resend_counter = 2

        self._feed(20, 18, 8)

        self.assertEqual(1, self.assembler.decode_attempts)
        self.assertEqual(reassembly.AssemblerState.IDLE, self.assembler.state)
        self.assertEmpty(self.assembler.buffer)
        self.assertEqual(0, self.assembler.resend_counter)

    def test_unexpected_decoder_error_propagates(self):
        self.decoder.side_effect = RuntimeError("bug")

        with self.assertRaises(RuntimeError):
            self._feed(20, 18, 8)
        self.assertEmpty(self.assembler.buffer)

    def test_overflow(self):
        self._feed(20, 18)
        self._feed(20)

        self.decoder.assert_not_called()
        self.assertEqual(reassembly.AssemblerState.IDLE, self.assembler.state)
        self.assertEmpty(self.assembler.buffer)

    def test_discard_keeps_resend_counter(self):
        self._feed(20)
        self.assembler.resend_counter = 2

        self.assembler.discard()

        self.assertEmpty(self.assembler.buffer)
        self.assertEqual(2, self.assembler.resend_counter)
        self.assertEqual(reassembly.AssemblerState.IDLE, self.assembler.state)

    def test_reset(self):
        self._feed(20)
        self.assembler.resend_counter = 2

        self.assembler.reset()

        self.assertEmpty(self.assembler.buffer)
        self.assertEqual(0, self.assembler.resend_counter)

    def test_not_stalled_when_idle(self):
        self.clock.now += 3600
        self.assertFalse(self.assembler.check_stall())
        self.on_stall.assert_not_called()

    def test_not_stalled_yet(self):
        self._feed(20)
        self.clock.now += reassembly.MAX_WAIT_FOR_PACKET - 1

        self.assertFalse(self.assembler.check_stall())
        self.on_stall.assert_not_called()

    def test_stalled(self):
        self._feed(20)
        self.clock.now += reassembly.MAX_WAIT_FOR_PACKET

        self.assertTrue(self.assembler.check_stall())
        self.on_stall.assert_called_once_with()
        # Recovery is up to the owner.
        self.assertLen(self.assembler.buffer, 20)

    def test_stall_timer_restarts_on_fragment(self):
        self._feed(20)
        self.clock.now += 50
        self._feed(18)
        self.clock.now += 50

        self.assertFalse(self.assembler.is_stalled())


if __name__ == "__main__":
    absltest.main()
