# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""BLE transport based on bleak.

bleak is asyncio based: the transport runs its own event loop on a dedicated
thread, and each command schedules a coroutine on it. Completions, errors
included, are reported to the delegate from the event loop thread.
"""

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Coroutine, Sequence
from typing import Any, Optional

import bleak
import bleak.exc
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from libredirect import exceptions, transport

_BLEAK_ERRORS = (bleak.exc.BleakError, asyncio.TimeoutError, OSError)


def _manufacturer_data(advertisement_data: AdvertisementData) -> Optional[bytes]:
    """Rebuild the manufacturer data as sent on air.

    bleak splits the company identifier out of the data; the sensors use it
    as part of the payload.
    """
    for company_id, data in advertisement_data.manufacturer_data.items():
        return company_id.to_bytes(2, "little") + bytes(data)
    return None


class BleakTransport(transport.Transport):
    def __init__(self, connect_timeout: float = 10.0) -> None:
        self._connect_timeout = connect_timeout
        self._delegate: Optional[transport.TransportDelegate] = None

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name="libredirect-bleak", daemon=True
        )

        self._scanner: Optional[bleak.BleakScanner] = None
        self._scanning = False
        self._devices: dict[str, BLEDevice] = {}
        self._clients: dict[str, bleak.BleakClient] = {}
        self._cancelled: set[str] = set()
        self._connecting: set[str] = set()

    def _run(self, coroutine: Coroutine[Any, Any, None]) -> None:
        future = asyncio.run_coroutine_threadsafe(coroutine, self._loop)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: "concurrent.futures.Future[None]") -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logging.error("bleak command failed: %r", error)

    @property
    def delegate(self) -> transport.TransportDelegate:
        assert self._delegate is not None
        return self._delegate

    def start(self, delegate: transport.TransportDelegate) -> None:
        self._delegate = delegate
        self._thread.start()
        self._run(self._start())

    async def _start(self) -> None:
        self._scanner = bleak.BleakScanner(detection_callback=self._detected)
        # bleak does not expose the adapter state, it shows when scanning starts.
        self.delegate.did_update_power_state(True)

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def scan(self) -> None:
        self._scanning = True
        self._run(self._scan())

    async def _scan(self) -> None:
        assert self._scanner is not None
        try:
            await self._scanner.start()
        except _BLEAK_ERRORS as error:
            logging.error("unable to scan: %s", error)
            self._scanning = False
            self.delegate.did_update_power_state(False)

    def stop_scan(self) -> None:
        self._scanning = False
        self._run(self._stop_scan())

    async def _stop_scan(self) -> None:
        if self._scanner is not None:
            await self._scanner.stop()

    def _detected(
        self, device: BLEDevice, advertisement_data: AdvertisementData
    ) -> None:
        self._devices[device.address] = device

        name = advertisement_data.local_name or device.name
        self.delegate.did_discover(
            transport.Peripheral(device.address, name),
            transport.Advertisement(
                name=name,
                manufacturer_data=_manufacturer_data(advertisement_data),
                rssi=advertisement_data.rssi,
            ),
        )

    def connect(self, peripheral: transport.Peripheral) -> None:
        self._run(self._connect(peripheral))

    async def _connect(self, peripheral: transport.Peripheral) -> None:
        self._cancelled.discard(peripheral.identifier)

        client = bleak.BleakClient(
            self._devices.get(peripheral.identifier, peripheral.identifier),
            disconnected_callback=lambda _: self._disconnected(peripheral),
            timeout=self._connect_timeout,
        )
        self._clients[peripheral.identifier] = client
        self._connecting.add(peripheral.identifier)

        try:
            await client.connect()
        except _BLEAK_ERRORS as error:
            self._clients.pop(peripheral.identifier, None)
            if peripheral.identifier in self._cancelled:
                self._cancelled.discard(peripheral.identifier)
                self.delegate.did_disconnect(peripheral, None)
            else:
                self.delegate.did_fail_to_connect(peripheral, error)
            return
        finally:
            self._connecting.discard(peripheral.identifier)

        if peripheral.identifier in self._cancelled:
            # Cancelled while connecting: the disconnected callback reports it.
            logging.debug("connection to %s was cancelled", peripheral.identifier)
            await self._disconnect_client(peripheral, client)
            return

        logging.debug("connected to %s", peripheral.identifier)
        self.delegate.did_connect(peripheral)

    def _disconnected(self, peripheral: transport.Peripheral) -> None:
        self._clients.pop(peripheral.identifier, None)

        error: Optional[Exception] = None
        if peripheral.identifier in self._cancelled:
            self._cancelled.discard(peripheral.identifier)
        else:
            error = exceptions.ConnectionFailed("Connection to the sensor lost.")

        self.delegate.did_disconnect(peripheral, error)

    def cancel_connection(self, peripheral: transport.Peripheral) -> None:
        self._run(self._cancel_connection(peripheral))

    async def _cancel_connection(self, peripheral: transport.Peripheral) -> None:
        if peripheral.identifier in self._connecting:
            # The pending connect disconnects once it completes.
            self._cancelled.add(peripheral.identifier)
            return

        client = self._clients.get(peripheral.identifier)
        if client is None or not client.is_connected:
            self._clients.pop(peripheral.identifier, None)
            self.delegate.did_disconnect(peripheral, None)
            return

        self._cancelled.add(peripheral.identifier)
        await self._disconnect_client(peripheral, client)

    async def _disconnect_client(
        self, peripheral: transport.Peripheral, client: bleak.BleakClient
    ) -> None:
        try:
            await client.disconnect()
        except _BLEAK_ERRORS as error:
            logging.error("unable to disconnect %s: %s", peripheral.identifier, error)

    def _client(self, peripheral: transport.Peripheral) -> bleak.BleakClient:
        client = self._clients.get(peripheral.identifier)
        if client is None or not client.is_connected:
            raise exceptions.ConnectionFailed(
                f"Not connected to {peripheral.identifier}."
            )
        return client

    def discover_services(
        self, peripheral: transport.Peripheral, service_uuids: Sequence[str]
    ) -> None:
        self._run(self._discover_services(peripheral, service_uuids))

    async def _discover_services(
        self, peripheral: transport.Peripheral, service_uuids: Sequence[str]
    ) -> None:
        # bleak resolves the whole GATT database on connection.
        try:
            client = self._client(peripheral)
        except exceptions.Error as error:
            self.delegate.did_discover_services(peripheral, (), error)
            return

        wanted = {transport.normalize_uuid(uuid) for uuid in service_uuids}
        found = [
            service.uuid
            for service in client.services
            if transport.normalize_uuid(service.uuid) in wanted
        ]
        self.delegate.did_discover_services(peripheral, found, None)

    def discover_characteristics(
        self, peripheral: transport.Peripheral, service: str
    ) -> None:
        self._run(self._discover_characteristics(peripheral, service))

    async def _discover_characteristics(
        self, peripheral: transport.Peripheral, service: str
    ) -> None:
        try:
            gatt_service = self._client(peripheral).services.get_service(service)
            if gatt_service is None:
                raise exceptions.CommandError(f"Service {service} not found.")
        except exceptions.Error as error:
            self.delegate.did_discover_characteristics(peripheral, service, (), error)
            return

        self.delegate.did_discover_characteristics(
            peripheral,
            service,
            [characteristic.uuid for characteristic in gatt_service.characteristics],
            None,
        )

    def write(
        self,
        peripheral: transport.Peripheral,
        characteristic: str,
        data: bytes,
        with_response: bool = True,
    ) -> None:
        self._run(self._write(peripheral, characteristic, data, with_response))

    async def _write(
        self,
        peripheral: transport.Peripheral,
        characteristic: str,
        data: bytes,
        with_response: bool,
    ) -> None:
        error: Optional[Exception] = None
        try:
            await self._client(peripheral).write_gatt_char(
                characteristic, data, response=with_response
            )
        except exceptions.Error as e:
            error = e
        except _BLEAK_ERRORS as e:
            error = exceptions.CommandError(str(e))

        self.delegate.did_write_value(peripheral, characteristic, error)

    def set_notify(
        self, peripheral: transport.Peripheral, characteristic: str, enabled: bool
    ) -> None:
        self._run(self._set_notify(peripheral, characteristic, enabled))

    async def _set_notify(
        self, peripheral: transport.Peripheral, characteristic: str, enabled: bool
    ) -> None:
        def notification_handler(_: Any, data: bytearray) -> None:
            self.delegate.did_update_value(
                peripheral, characteristic, bytes(data), None
            )

        error: Optional[Exception] = None
        try:
            client = self._client(peripheral)
            if enabled:
                await client.start_notify(characteristic, notification_handler)
            else:
                await client.stop_notify(characteristic)
        except exceptions.Error as e:
            error = e
        except _BLEAK_ERRORS as e:
            error = exceptions.CommandError(str(e))

        self.delegate.did_update_notification_state(peripheral, characteristic, error)

    def close(self) -> None:
        if not self._thread.is_alive():
            return

        future = asyncio.run_coroutine_threadsafe(self._close(), self._loop)
        try:
            future.result(timeout=self._connect_timeout)
        except concurrent.futures.TimeoutError:
            logging.error("timed out closing the BLE transport")

        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join()

    async def _close(self) -> None:
        if self._scanning and self._scanner is not None:
            self._scanning = False
            await self._scanner.stop()

        for identifier, client in list(self._clients.items()):
            self._cancelled.add(identifier)
            try:
                await client.disconnect()
            except _BLEAK_ERRORS as error:
                logging.error("unable to disconnect %s: %s", identifier, error)
