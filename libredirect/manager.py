# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Connection lifecycle of a paired sensor.

The manager scans for the paired sensor, connects to it, unlocks streaming and
subscribes to its notifications, then keeps the link alive: transport errors
lead to an immediate reconnection, clean disconnections to a new scan after a
delay.

Every transport command and every transport callback runs on the manager's own
worker thread. Timers only ever enqueue work on it.
"""

import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Any, Optional

import attr

from libredirect import common, exceptions, pairing, sensor, transport
from libredirect.support import identity_store, libre2, reassembly, worker

_LINKED_STATES = (
    common.ConnectionState.CONNECTING,
    common.ConnectionState.CONNECTED,
    common.ConnectionState.NOTIFYING,
)
_BUSY_STATES = (common.ConnectionState.SCANNING,) + _LINKED_STATES


@attr.s(auto_attribs=True, frozen=True)
class ManagerConfig:
    """Tunables of the connection manager.

    Attributes:
      rescan_delay: seconds to wait before scanning again after a clean
        disconnection.
      stall_timeout: seconds without notifications after which a partial packet
        is considered stalled.
      max_resend_requests: reconnections attempted for stalled packets, before
        falling back to a delayed scan.
      enable_time: the time sent with the enable streaming NFC command.
    """

    rescan_delay: float = 30.0
    stall_timeout: float = reassembly.MAX_WAIT_FOR_PACKET
    max_resend_requests: int = reassembly.MAX_RESEND_REQUESTS
    enable_time: int = libre2.DEFAULT_ENABLE_TIME


class SensorObserver:
    """Receives the output of the connection manager.

    All methods are called on the manager's worker thread, and should not
    block.
    """

    def connection_state_changed(self, state: common.ConnectionState) -> None:
        pass

    def sensor_data_received(self, data: common.SensorData) -> None:
        pass

    def expiry_warning(self, warning: common.ExpiryWarning) -> None:
        pass

    def pairing_failed(self, error: exceptions.Error) -> None:
        pass


class ConnectionManager(transport.TransportDelegate):
    def __init__(
        self,
        ble_transport: transport.Transport,
        store: identity_store.IdentityStore,
        observer: Optional[SensorObserver] = None,
        config: Optional[ManagerConfig] = None,
        session_factory: Optional[Callable[[], pairing.PairingSession]] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = ble_transport
        self._store = store
        self._observer = observer or SensorObserver()
        self._config = config or ManagerConfig()
        self._timer_factory = timer_factory

        self._worker = worker.SerialWorker()
        self.pairing = pairing.PairingLink(
            store,
            session_factory,
            on_paired=self._paired,
            on_error=self._pairing_failed,
        )
        self._assembler = reassembly.PacketAssembler(
            self._decode_packet,
            on_stall=self._handle_stall,
            max_wait=self._config.stall_timeout,
            clock=clock,
        )

        self._state = common.ConnectionState.UNASSIGNED
        self._powered_on = False
        self._stay_connected = True
        self._reconnect_on_disconnect = False
        self._peripheral: Optional[transport.Peripheral] = None
        self._sensor: Optional[sensor.SensorFamily] = None
        self._rescan_timer: Optional[Any] = None
        self._stall_timer: Optional[Any] = None

    def start(self) -> None:
        logging.debug("starting transport %r", self._transport)
        self._transport.start(self)

    def close(self) -> None:
        if self._worker.stopped:
            return
        self.disconnect()
        self._transport.close()
        self._worker.stop()

    @property
    def connection_state(self) -> common.ConnectionState:
        return self._worker.run_sync(lambda: self._state)

    @property
    def peripheral(self) -> Optional[transport.Peripheral]:
        return self._worker.run_sync(lambda: self._peripheral)

    def scan(self) -> None:
        """Scan for the sensor right away, cancelling any pending rescan."""
        self._worker.run_sync(self._scan)

    def disconnect(self, stay_connected: bool = False) -> None:
        """Drop the link to the sensor.

        Args:
          stay_connected: when True, the sensor is scanned for again after the
            rescan delay. Otherwise the manager stays idle until scan() is
            called.
        """
        self._worker.run_sync(self._disconnect, stay_connected)

    def reset(self) -> None:
        """Forget the paired sensor, and drop any link to it."""
        self._worker.run_sync(self._reset)

    # Transport callbacks, from the transport's own threads.

    def did_update_power_state(self, powered_on: bool) -> None:
        self._worker.submit(self._handle_power_state, powered_on)

    def did_discover(
        self, peripheral: transport.Peripheral, advertisement: transport.Advertisement
    ) -> None:
        self._worker.submit(self._handle_discover, peripheral, advertisement)

    def did_connect(self, peripheral: transport.Peripheral) -> None:
        self._worker.submit(self._handle_connect, peripheral)

    def did_fail_to_connect(
        self, peripheral: transport.Peripheral, error: Optional[Exception]
    ) -> None:
        self._worker.submit(self._handle_fail_to_connect, peripheral, error)

    def did_disconnect(
        self, peripheral: transport.Peripheral, error: Optional[Exception]
    ) -> None:
        self._worker.submit(self._handle_disconnect, peripheral, error)

    def did_discover_services(
        self,
        peripheral: transport.Peripheral,
        services: Sequence[str],
        error: Optional[Exception],
    ) -> None:
        self._worker.submit(self._handle_discover_services, peripheral, services, error)

    def did_discover_characteristics(
        self,
        peripheral: transport.Peripheral,
        service: str,
        characteristics: Sequence[str],
        error: Optional[Exception],
    ) -> None:
        self._worker.submit(
            self._handle_discover_characteristics,
            peripheral,
            service,
            characteristics,
            error,
        )

    def did_write_value(
        self,
        peripheral: transport.Peripheral,
        characteristic: str,
        error: Optional[Exception],
    ) -> None:
        self._worker.submit(self._handle_write, peripheral, characteristic, error)

    def did_update_notification_state(
        self,
        peripheral: transport.Peripheral,
        characteristic: str,
        error: Optional[Exception],
    ) -> None:
        self._worker.submit(
            self._handle_notification_state, peripheral, characteristic, error
        )

    def did_update_value(
        self,
        peripheral: transport.Peripheral,
        characteristic: str,
        value: bytes,
        error: Optional[Exception],
    ) -> None:
        self._worker.submit(
            self._handle_value, peripheral, characteristic, bytes(value), error
        )

    # Everything below runs on the worker thread.

    def _set_state(self, state: common.ConnectionState) -> None:
        if state == self._state:
            return

        logging.info("connection state: %s -> %s", self._state.value, state.value)
        self._state = state
        self._observer.connection_state_changed(state)

    def _is_current(self, peripheral: transport.Peripheral) -> bool:
        return (
            self._peripheral is not None
            and self._peripheral.identifier == peripheral.identifier
        )

    def _paired(self) -> None:
        self._worker.submit(self._scan_for_peripheral)

    def _pairing_failed(self, error: exceptions.Error) -> None:
        self._observer.pairing_failed(error)

    def _handle_power_state(self, powered_on: bool) -> None:
        self._powered_on = powered_on
        if powered_on:
            logging.info("radio powered on")
            self._scan_for_peripheral()
            return

        logging.info("radio powered off")
        self._cancel_timers()
        self._assembler.discard()
        self._peripheral = None
        self._set_state(common.ConnectionState.POWER_OFF)

    def _scan(self) -> None:
        self._stay_connected = True
        self._cancel_rescan_timer()
        self._scan_for_peripheral()

    def _scan_for_peripheral(self) -> None:
        if not self._powered_on:
            logging.debug("radio is off, not scanning")
            return

        if not self._stay_connected:
            logging.debug("disconnected on request, not scanning")
            return

        if self._state in _BUSY_STATES:
            return

        self.pairing.setup()
        if not self.pairing.is_paired():
            logging.info("sensor is not paired, not scanning")
            self._set_state(common.ConnectionState.UNASSIGNED)
            return

        logging.info("scanning for sensor")
        if not self._transport.is_scanning:
            self._transport.scan()
        self._set_state(common.ConnectionState.SCANNING)

    def _handle_discover(
        self, peripheral: transport.Peripheral, advertisement: transport.Advertisement
    ) -> None:
        if self._state != common.ConnectionState.SCANNING:
            return

        family = sensor.family_for_name(advertisement.name or peripheral.name)
        if family is None:
            return

        candidate = family.sensor(self._store)
        if not candidate.can_support_peripheral(peripheral, advertisement):
            logging.debug("ignoring sensor %s", peripheral.identifier)
            return

        logging.info("found sensor %s (%s)", peripheral.name, peripheral.identifier)
        self._sensor = candidate
        self._transport.stop_scan()
        self._connect(peripheral)

    def _connect(self, peripheral: transport.Peripheral) -> None:
        logging.debug("connecting to %s", peripheral.identifier)
        self._peripheral = peripheral
        self._assembler.discard()
        self._transport.connect(peripheral)
        self._set_state(common.ConnectionState.CONNECTING)

    def _handle_connect(self, peripheral: transport.Peripheral) -> None:
        if not self._is_current(peripheral) or self._sensor is None:
            return
        if not self.pairing.is_paired():
            logging.info("sensor was reset, dropping %s", peripheral.identifier)
            self._transport.cancel_connection(peripheral)
            return

        self._set_state(common.ConnectionState.CONNECTED)
        self._assembler.discard()
        self._transport.discover_services(peripheral, self._sensor.service_uuids)

    def _handle_fail_to_connect(
        self, peripheral: transport.Peripheral, error: Optional[Exception]
    ) -> None:
        if not self._is_current(peripheral):
            return

        logging.error("unable to connect to %s: %s", peripheral.identifier, error)
        if self._stay_connected and self.pairing.is_paired():
            self._connect(peripheral)
            return

        self._forget_peripheral()
        self._set_state(common.ConnectionState.UNASSIGNED)
        if self._stay_connected:
            self._scan_after_delay()

    def _handle_disconnect(
        self, peripheral: transport.Peripheral, error: Optional[Exception]
    ) -> None:
        if not self._is_current(peripheral):
            return

        self._cancel_stall_timer()
        self._assembler.discard()

        if error is not None:
            logging.error("sensor %s disconnected: %s", peripheral.identifier, error)
        else:
            logging.info("sensor %s disconnected", peripheral.identifier)

        reconnect = error is not None or self._reconnect_on_disconnect
        self._reconnect_on_disconnect = False

        if self._stay_connected and reconnect and self.pairing.is_paired():
            self._connect(peripheral)
            return

        self._forget_peripheral()
        self._set_state(common.ConnectionState.UNASSIGNED)
        if self._stay_connected:
            self._scan_after_delay()

    def _forget_peripheral(self) -> None:
        self._peripheral = None
        self._sensor = None

    def _abort(self, peripheral: transport.Peripheral, error: Exception) -> None:
        """Drop a link that cannot proceed, reconnecting right away."""
        logging.error("sensor %s: %s", peripheral.identifier, error)
        self._reconnect_on_disconnect = True
        self._transport.cancel_connection(peripheral)

    def _handle_discover_services(
        self,
        peripheral: transport.Peripheral,
        services: Sequence[str],
        error: Optional[Exception],
    ) -> None:
        if not self._is_current(peripheral) or self._sensor is None:
            return
        if error is not None:
            self._abort(peripheral, error)
            return

        wanted = {transport.normalize_uuid(uuid) for uuid in self._sensor.service_uuids}
        for service in services:
            if transport.normalize_uuid(service) in wanted:
                self._transport.discover_characteristics(peripheral, service)

    def _handle_discover_characteristics(
        self,
        peripheral: transport.Peripheral,
        service: str,
        characteristics: Sequence[str],
        error: Optional[Exception],
    ) -> None:
        if not self._is_current(peripheral) or self._sensor is None:
            return
        if error is not None:
            self._abort(peripheral, error)
            return

        found = {transport.normalize_uuid(uuid) for uuid in characteristics}
        logging.debug("characteristics of %s: %s", service, sorted(found))
        if self._sensor.write_characteristic_uuid in found:
            self._unlock(peripheral)

    def _unlock(self, peripheral: transport.Peripheral) -> None:
        assert self._sensor is not None
        try:
            payload = self._sensor.unlock_payload(self._config.enable_time)
        except exceptions.Error as error:
            self._abort(peripheral, error)
            return

        self._transport.write(
            peripheral,
            self._sensor.write_characteristic_uuid,
            payload,
            with_response=True,
        )

    def _handle_write(
        self,
        peripheral: transport.Peripheral,
        characteristic: str,
        error: Optional[Exception],
    ) -> None:
        if not self._is_current(peripheral) or self._sensor is None:
            return
        if error is not None:
            self._abort(peripheral, error)
            return

        if transport.normalize_uuid(characteristic) == (
            self._sensor.write_characteristic_uuid
        ):
            logging.debug("unlock acknowledged, subscribing")
            self._transport.set_notify(
                peripheral, self._sensor.read_characteristic_uuid, True
            )

    def _handle_notification_state(
        self,
        peripheral: transport.Peripheral,
        characteristic: str,
        error: Optional[Exception],
    ) -> None:
        if not self._is_current(peripheral) or self._sensor is None:
            return
        if error is not None:
            self._abort(peripheral, error)
            return

        if transport.normalize_uuid(characteristic) != (
            self._sensor.read_characteristic_uuid
        ):
            return

        self._assembler.discard()
        self._set_state(common.ConnectionState.NOTIFYING)

    def _handle_value(
        self,
        peripheral: transport.Peripheral,
        characteristic: str,
        value: bytes,
        error: Optional[Exception],
    ) -> None:
        if not self._is_current(peripheral) or self._sensor is None:
            return
        if error is not None:
            logging.error("error reading from sensor: %s", error)
            return

        if transport.normalize_uuid(characteristic) != (
            self._sensor.read_characteristic_uuid
        ):
            return

        self._assembler.append(value)
        if self._assembler.state == reassembly.AssemblerState.ACCUMULATING:
            self._arm_stall_timer()
        else:
            self._cancel_stall_timer()

    def _decode_packet(self, packet: bytes) -> None:
        assert self._sensor is not None
        data = self._sensor.decode_packet(packet)
        logging.info("received sensor data: %s", data.latest)

        self._observer.sensor_data_received(data)
        self._track_expiry(data.wear_time_minutes)

    def _track_expiry(self, wear_time_minutes: int) -> None:
        warning = common.expiry_warning(
            wear_time_minutes, self._store.last_wear_time_minutes
        )
        self._store.last_wear_time_minutes = wear_time_minutes

        if warning is not None:
            logging.info("sensor expiry warning: %s", warning.name)
            self._observer.expiry_warning(warning)

    def _handle_stall(self) -> None:
        self._cancel_stall_timer()
        self._assembler.discard()
        if self._peripheral is None:
            return

        self._assembler.resend_counter += 1
        if self._assembler.resend_counter <= self._config.max_resend_requests:
            logging.info(
                "packet stalled, reconnecting (attempt %d of %d)",
                self._assembler.resend_counter,
                self._config.max_resend_requests,
            )
            self._reconnect_on_disconnect = True
        else:
            logging.error("packet stalled too many times, scanning again later")
            self._assembler.resend_counter = 0
            self._reconnect_on_disconnect = False

        self._transport.cancel_connection(self._peripheral)

    def _check_stall(self) -> None:
        self._stall_timer = None
        self._assembler.check_stall()

    def _disconnect(self, stay_connected: bool) -> None:
        logging.info("disconnecting from sensor")
        self._stay_connected = stay_connected
        self._reconnect_on_disconnect = False
        self._cancel_timers()

        if self._transport.is_scanning:
            self._transport.stop_scan()

        if self._peripheral is not None and self._state in _LINKED_STATES:
            self._transport.cancel_connection(self._peripheral)
        else:
            self._set_state(common.ConnectionState.UNASSIGNED)

    def _reset(self) -> None:
        self._cancel_timers()
        self._store.reset()
        self._assembler.reset()
        self._reconnect_on_disconnect = False

        if self._transport.is_scanning:
            self._transport.stop_scan()

        # The link callback still has to match the peripheral, so a linked
        # peripheral is only forgotten once it is reported dropped.
        if self._peripheral is not None and self._state in _LINKED_STATES:
            self._transport.cancel_connection(self._peripheral)
        else:
            self._forget_peripheral()
            self._set_state(common.ConnectionState.UNASSIGNED)
            self._scan_after_delay()

    def _start_timer(self, delay: float, function: Callable[[], None]) -> Any:
        timer = self._timer_factory(delay, self._worker.submit, args=(function,))
        timer.daemon = True
        timer.start()
        return timer

    def _scan_after_delay(self) -> None:
        self._cancel_rescan_timer()
        logging.info("scanning again in %.0f seconds", self._config.rescan_delay)
        self._rescan_timer = self._start_timer(self._config.rescan_delay, self._rescan)

    def _rescan(self) -> None:
        self._rescan_timer = None
        self._scan_for_peripheral()

    def _arm_stall_timer(self) -> None:
        self._cancel_stall_timer()
        self._stall_timer = self._start_timer(
            self._config.stall_timeout, self._check_stall
        )

    def _cancel_rescan_timer(self) -> None:
        if self._rescan_timer is not None:
            self._rescan_timer.cancel()
            self._rescan_timer = None

    def _cancel_stall_timer(self) -> None:
        if self._stall_timer is not None:
            self._stall_timer.cancel()
            self._stall_timer = None

    def _cancel_timers(self) -> None:
        self._cancel_rescan_timer()
        self._cancel_stall_timer()
