#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Utility to pair with and read from FreeStyle Libre 2 sensors."""

import argparse
import binascii
import logging
import os
import sys
import threading

from libredirect import common, exceptions, manager, pairing, sensor
from libredirect.support import identity_store

_DEFAULT_STORE = os.path.join("~", ".config", "libredirect", "sensor.json")
_DEFAULT_FAMILY = "libre2"


class _PrintingObserver(manager.SensorObserver):
    def __init__(self, unit: common.Unit) -> None:
        self._unit = unit

    def connection_state_changed(self, state: common.ConnectionState) -> None:
        print(f"# {state.value}", file=sys.stderr)

    def sensor_data_received(self, data: common.SensorData) -> None:
        latest = data.latest
        if latest is not None:
            print(latest.as_csv(self._unit), flush=True)

    def expiry_warning(self, warning: common.ExpiryWarning) -> None:
        print(f"# Sensor expiry: {warning.name}", file=sys.stderr)

    def pairing_failed(self, error: exceptions.Error) -> None:
        print(f"# Pairing failed: {error}", file=sys.stderr)


def _print_info(store: identity_store.IdentityStore) -> None:
    identity = store.identity()
    if identity is None:
        raise exceptions.NotPaired()

    print(
        f"Sensor UID: {binascii.hexlify(identity.sensor_uid).decode('ascii')}\n"
        f"Patch Info: {binascii.hexlify(identity.patch_info).decode('ascii')}\n"
        f"Type: {identity.sensor_type.value}\n"
        f"Region: {identity.region.value}\n"
        f"State: {store.state.value if store.state else 'N/A'}\n"
        f"Paired: {'yes' if store.is_paired() else 'no'}\n"
        f"Unlock Count: {store.unlock_count}\n"
        f"Last Wear Time: {store.last_wear_time_minutes or 'N/A'} minutes"
    )
    if store.calibration is not None:
        print(f"Calibration: {store.calibration}")


def _unhexlify(value: str) -> bytes:
    try:
        return binascii.unhexlify(value.replace(" ", ""))
    except ValueError:
        raise exceptions.CommandLineError(f"{value}: not a valid hex string") from None


def main():
    if sys.version_info < (3, 9):
        raise Exception("Unsupported Python version, please use at least Python 3.9")

    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="action")

    parser.add_argument(
        "--store",
        action="store",
        default=_DEFAULT_STORE,
        help="Path to the JSON file storing the paired sensor's identity.",
    )
    parser.add_argument(
        "--vlog",
        action="store",
        required=False,
        type=int,
        help=(
            "Python logging level. See the levels at "
            "https://docs.python.org/3/library/logging.html#logging-levels"
        ),
    )

    subparsers.add_parser(
        "help",
        help="Display a description of the sensor family, including quirks.",
    )

    parser_pair = subparsers.add_parser(
        "pair", help="Pair with a sensor, from data read by an NFC reader."
    )
    parser_pair.add_argument(
        "--uid", action="store", required=True, help="Sensor UID, in hex."
    )
    parser_pair.add_argument(
        "--patch-info",
        action="store",
        required=True,
        help="Sensor patch information, in hex.",
    )
    parser_pair.add_argument(
        "--fram",
        action="store",
        required=True,
        type=argparse.FileType("rb"),
        help="Path to the 344 bytes dump of the encrypted FRAM.",
    )

    subparsers.add_parser("info", help="Display information about the sensor.")

    parser_unlock = subparsers.add_parser(
        "unlock", help="Display the next streaming unlock payload."
    )
    parser_unlock.add_argument(
        "--enable-time",
        action="store",
        type=int,
        default=None,
        help="Time sent with the enable streaming NFC command.",
    )

    parser_decode = subparsers.add_parser(
        "decode", help="Decrypt and parse a 46 bytes BLE packet."
    )
    parser_decode.add_argument("packet", action="store", help="Packet, in hex.")

    subparsers.add_parser("reset", help="Forget the paired sensor.")

    parser_stream = subparsers.add_parser(
        "stream", help="Connect to the sensor and print its readings."
    )
    parser_stream.add_argument(
        "--rescan-delay",
        action="store",
        type=float,
        default=manager.ManagerConfig().rescan_delay,
        help="Seconds to wait before scanning again after a disconnection.",
    )

    for subparser in (parser_decode, parser_stream):
        subparser.add_argument(
            "--unit",
            action="store",
            choices=[unit.value for unit in common.Unit],
            default=common.Unit.MG_DL.value,
            help="Select the unit to use for the printed data.",
        )

    args = parser.parse_args()

    logging.basicConfig(level=args.vlog)

    requested_family = sensor.load_family(_DEFAULT_FAMILY)

    if not args.action or args.action == "help":
        print(requested_family.help)
        return 0

    store = identity_store.JsonFileIdentityStore(os.path.expanduser(args.store))
    sensor_family = requested_family.sensor(store)

    try:
        if args.action == "pair":
            errors: list[exceptions.Error] = []
            link = pairing.PairingLink(store, on_error=errors.append)
            link.reset()
            session = pairing.CapturedPairingSession(
                _unhexlify(args.uid), _unhexlify(args.patch_info), args.fram.read()
            )
            session.start(link)
            if errors:
                raise errors[0]
            _print_info(store)
        elif args.action == "info":
            _print_info(store)
        elif args.action == "unlock":
            payload = sensor_family.unlock_payload(args.enable_time)
            print(binascii.hexlify(payload).decode("ascii"))
        elif args.action == "decode":
            data = sensor_family.decode_packet(_unhexlify(args.packet))
            print(data)
            unit = common.Unit(args.unit)
            for measurement in data.history:
                print(measurement.as_csv(unit))
            for measurement in data.trend:
                print(measurement.as_csv(unit))
        elif args.action == "reset":
            confirm = input("Forget the paired sensor? (y/N) ")
            if confirm.lower() in ["y", "ye", "yes"]:
                store.reset()
                print("\nSensor identity cleared.")
            else:
                print("\nSensor identity not cleared.")
                return 1
        elif args.action == "stream":
            if not store.is_paired():
                raise exceptions.NotPaired()

            from libredirect.support import bleak_transport

            connection = manager.ConnectionManager(
                bleak_transport.BleakTransport(),
                store,
                observer=_PrintingObserver(common.Unit(args.unit)),
                config=manager.ManagerConfig(rescan_delay=args.rescan_delay),
            )
            connection.start()
            try:
                threading.Event().wait()
            except KeyboardInterrupt:
                pass
            finally:
                connection.close()
        else:
            return 1
    except exceptions.Error as err:
        print(f"Error while executing '{args.action}': {err}")
        return 1

    return 0
