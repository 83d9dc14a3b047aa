# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Reassembly of the BLE notifications sent by Libre 2 sensors.

Each reading is sent as one 46 bytes packet, split across notifications of 20,
18 and 8 bytes. The assembler does not rely on the fragment sizes: it appends
whatever it receives and triggers a decode as soon as the buffer holds a full
packet.
"""

import binascii
import enum
import logging
import time
from collections.abc import Callable
from typing import Optional

from libredirect import exceptions
from libredirect.support import libre2

MAX_WAIT_FOR_PACKET = 60.0
MAX_RESEND_REQUESTS = 3


class AssemblerState(enum.Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    READY = "ready"
    DECODING = "decoding"


class PacketAssembler:
    """Accumulates notification fragments into whole packets.

    Args:
      decoder: called with each complete packet. Any exceptions.Error it raises
        is treated as a discarded packet.
      on_stall: called by check_stall() when the packet in progress stalled.
      packet_size: the size of a complete packet.
      max_wait: seconds without fragments after which a packet is stalled.
      clock: monotonic time source, replaceable for testing.
    """

    def __init__(
        self,
        decoder: Callable[[bytes], None],
        on_stall: Optional[Callable[[], None]] = None,
        packet_size: int = libre2.BLE_PACKET_SIZE,
        max_wait: float = MAX_WAIT_FOR_PACKET,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._decoder = decoder
        self._on_stall = on_stall
        self._packet_size = packet_size
        self._max_wait = max_wait
        self._clock = clock

        self.state = AssemblerState.IDLE
        self.buffer = bytearray()
        self.resend_counter = 0
        self.last_packet_timestamp = clock()
        self.decode_attempts = 0

    def discard(self) -> None:
        """Drop the packet in progress, keeping the resend counter."""
        logging.debug("discarding packet buffer (%d bytes)", len(self.buffer))
        self.buffer = bytearray()
        self.last_packet_timestamp = self._clock()
        self.state = AssemblerState.IDLE

    def reset(self) -> None:
        self.discard()
        self.resend_counter = 0

    def append(self, fragment: bytes) -> None:
        """Append a notification fragment, decoding the packet once complete."""
        logging.debug(
            "received fragment of %d bytes: %s",
            len(fragment),
            binascii.hexlify(fragment),
        )

        self.buffer.extend(fragment)
        self.last_packet_timestamp = self._clock()

        if len(self.buffer) < self._packet_size:
            self.state = AssemblerState.ACCUMULATING
            return

        if len(self.buffer) > self._packet_size:
            logging.error(
                "packet buffer overflow (%d bytes), discarding", len(self.buffer)
            )
            self.reset()
            return

        self.state = AssemblerState.READY
        self._decode()

    def _decode(self) -> None:
        packet = bytes(self.buffer)
        self.state = AssemblerState.DECODING
        self.decode_attempts += 1

        try:
            self._decoder(packet)
        except exceptions.Error as error:
            logging.info("discarding packet %s: %s", binascii.hexlify(packet), error)
        finally:
            self.reset()

    def is_stalled(self, now: Optional[float] = None) -> bool:
        if self.state != AssemblerState.ACCUMULATING:
            return False

        if now is None:
            now = self._clock()

        return now - self.last_packet_timestamp >= self._max_wait

    def check_stall(self, now: Optional[float] = None) -> bool:
        """Report a packet that has not been completed in time.

        The buffer is left untouched: the owner decides how to recover, and
        whether to reset it.
        """
        if not self.is_stalled(now):
            return False

        logging.info(
            "packet stalled with %d of %d bytes", len(self.buffer), self._packet_size
        )
        if self._on_stall is not None:
            self._on_stall()
        return True
