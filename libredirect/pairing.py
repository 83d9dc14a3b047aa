# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Pairing with a sensor through the data read over NFC.

The NFC session itself is external: it only needs to report the identity and
FRAM it read, and whether streaming was enabled, to a PairingLink. The link
decodes what it receives and persists it in the identity store.
"""

import abc
import binascii
import logging
from collections.abc import Callable
from typing import Optional

from libredirect import exceptions
from libredirect.support import identity_store, libre2


class PairingSession(abc.ABC):
    @abc.abstractmethod
    def start(self, link: "PairingLink") -> None:
        """Start reading the sensor, reporting the results to the link."""
        pass


class CapturedPairingSession(PairingSession):
    """Pairing session replaying data captured by an external NFC reader."""

    def __init__(self, sensor_uid: bytes, patch_info: bytes, fram: bytes) -> None:
        self._sensor_uid = sensor_uid
        self._patch_info = patch_info
        self._fram = fram

    def start(self, link: "PairingLink") -> None:
        try:
            link.received_identity(self._sensor_uid, self._patch_info)
            link.received_fram(self._fram)
        except exceptions.Error as error:
            link.failed(error)
        else:
            link.streaming_enabled(True)
        finally:
            link.finished()


class PairingLink:
    """Receives the results of pairing sessions.

    Args:
      store: the identity store to fill in.
      session_factory: creates a new pairing session, when pairing is needed.
      on_paired: called once identity, calibration and state are all known.
      on_error: called with the error of a failed pairing.
    """

    def __init__(
        self,
        store: identity_store.IdentityStore,
        session_factory: Optional[Callable[[], PairingSession]] = None,
        on_paired: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[exceptions.Error], None]] = None,
    ) -> None:
        self._store = store
        self._session_factory = session_factory
        self._on_paired = on_paired
        self._on_error = on_error
        self._session: Optional[PairingSession] = None

    def is_paired(self) -> bool:
        return self._store.is_paired()

    @property
    def in_progress(self) -> bool:
        return self._session is not None

    def setup(self) -> None:
        """Start a pairing session, unless paired or already pairing."""
        if self.is_paired() or self._session is not None:
            return

        if self._session_factory is None:
            logging.info("sensor is not paired, waiting for pairing data")
            return

        logging.info("sensor is not paired, starting pairing")
        self._session = self._session_factory()
        self._session.start(self)

    def reset(self) -> None:
        self._store.clear_identity()

    def received_identity(self, sensor_uid: bytes, patch_info: bytes) -> None:
        logging.debug(
            "received sensor identity: uid %s, patch info %s",
            binascii.hexlify(sensor_uid),
            binascii.hexlify(patch_info),
        )
        self._store.clear_identity()
        self._store.sensor_uid = sensor_uid
        self._store.patch_info = patch_info

    def received_fram(self, fram: bytes) -> None:
        """Decode the FRAM, and store the calibration and state it holds.

        Raises:
          PairingFailed: when the identity is unknown or the FRAM cannot be
            decoded. The identity is cleared in that case.
        """
        identity = self._store.identity()
        if identity is None:
            raise exceptions.PairingFailed("FRAM received before the sensor identity.")

        try:
            plaintext = libre2.decrypt_fram(
                identity.sensor_uid, identity.patch_info, fram
            )
            calibration = libre2.read_calibration(plaintext)
            state = libre2.read_state(plaintext)
        except exceptions.Error as error:
            self._store.clear_identity()
            raise exceptions.PairingFailed(
                f"Unable to decode FRAM: {error}"
            ) from error

        logging.info("paired %s sensor, state %s", identity.sensor_type, state)
        logging.debug("calibration: %s", calibration)

        self._store.calibration = calibration
        self._store.state = state

        if self._on_paired is not None and self.is_paired():
            self._on_paired()

    def streaming_enabled(self, successful: bool) -> None:
        if successful:
            logging.debug("streaming enabled, resetting unlock counter")
            self._store.unlock_count = 0
        else:
            logging.error("sensor did not enable streaming")

    def failed(self, error: exceptions.Error) -> None:
        logging.error("pairing failed: %s", error)
        self._store.clear_identity()
        if self._on_error is not None:
            self._on_error(error)

    def finished(self) -> None:
        self._session = None
