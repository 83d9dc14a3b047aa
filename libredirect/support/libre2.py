# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Support module for the FreeStyle Libre 2 sensor encryption.

Libre 2 sensors encrypt both the FRAM content read over NFC and the packets
streamed over Bluetooth Low Energy. The key material is derived from the sensor
UID and its patch information, through a small keyed transform operating on
four 16-bit words.

The same transform is used to produce the payload that, written to the sensor,
enables the BLE streaming mode.

Every function in this module is pure and can be called from any thread.
"""

import binascii
import datetime
import logging
import math
from collections.abc import Sequence
from typing import Optional

import attr
import construct
import crcmod

from libredirect import common, exceptions

FRAM_SIZE = 344
BLE_PACKET_SIZE = 46
BLE_PLAINTEXT_SIZE = 44
UNLOCK_PAYLOAD_SIZE = 20
DEFAULT_ENABLE_TIME = 42

# Fixed suffix of the UIDs of all the Libre sensors, which is not advertised.
UID_SUFFIX = b"\x07\xe0"

_KEY = (0xA0C5, 0x6860, 0x0000, 0x14C6)

_FRAM_BLOCK_SIZE = 8
_FRAM_BLOCK_COUNT = FRAM_SIZE // _FRAM_BLOCK_SIZE

# Minutes in the past of each of the trend samples.
_TREND_OFFSETS = (0, 2, 4, 6, 7, 12, 15)
_HISTORY_COUNT = 3
_HISTORY_INTERVAL = 15
# The sensor only stores a history value two minutes after the quarter.
_HISTORY_DELAY = 2

_crc16_mcrf4xx = crcmod.mkCrcFun(0x11021, initCrc=0xFFFF, rev=True, xorOut=0x0000)

_FACTORY_CALIBRATION = construct.ByteSwapped(
    construct.BitStruct(
        padding=construct.Padding(3),
        i2=construct.BitsInteger(10),
        i1=construct.BitsInteger(3),
    )
)

_FRAM_CALIBRATION = construct.ByteSwapped(
    construct.BitStruct(
        i6=construct.BitsInteger(12),
        i5=construct.BitsInteger(12),
        padding_high=construct.Padding(6),
        i3_negative=construct.Flag,
        padding_low=construct.Padding(11),
        i4=construct.BitsInteger(14),
        i3=construct.BitsInteger(8),
    )
)

_FRAM = construct.Struct(
    header_checksum=construct.Int16ub,
    factory=_FACTORY_CALIBRATION,
    state=construct.Byte,
    calibration=construct.Pointer(0x150, _FRAM_CALIBRATION),
)

_SAMPLE = construct.ByteSwapped(
    construct.BitStruct(
        negative_adjustment=construct.Flag,
        temperature_adjustment=construct.BitsInteger(5),
        raw_temperature=construct.BitsInteger(12),
        raw_glucose=construct.BitsInteger(14),
    )
)

_BLE_PAYLOAD = construct.Struct(
    samples=construct.Array(len(_TREND_OFFSETS) + _HISTORY_COUNT, _SAMPLE),
    wear_time_minutes=construct.Int16ul,
)


def crc16(data: bytes) -> int:
    """Calculate the CRC-16 as used by Abbott in FRAM and BLE packets.

    This is a reflected CRC-16-CCITT seeded with 0xFFFF, whose result is then
    bit-reversed and byte-swapped.
    """
    crc = _crc16_mcrf4xx(bytes(data))

    reversed_crc = 0
    for _ in range(16):
        reversed_crc = (reversed_crc << 1) | (crc & 1)
        crc >>= 1

    return ((reversed_crc & 0xFF) << 8) | (reversed_crc >> 8)


def _word(high: int, low: int) -> int:
    return ((high << 8) | low) & 0xFFFF


def _split_words(words: Sequence[int]) -> bytes:
    return b"".join(word.to_bytes(2, "little") for word in words)


def _check_identity(sensor_uid: bytes, patch_info: Optional[bytes] = None) -> None:
    if len(sensor_uid) < 6:
        raise exceptions.InvalidPacketLength(6, len(sensor_uid))
    if patch_info is not None and len(patch_info) < 6:
        raise exceptions.InvalidPacketLength(6, len(patch_info))


def _prepare_variables(sensor_uid: bytes, x: int, y: int) -> list[int]:
    return [
        (_word(sensor_uid[5], sensor_uid[4]) + x + y) & 0xFFFF,
        (_word(sensor_uid[3], sensor_uid[2]) + _KEY[2]) & 0xFFFF,
        (_word(sensor_uid[1], sensor_uid[0]) + x * 2) & 0xFFFF,
        0x241A ^ _KEY[3],
    ]


def _prepare_variables2(
    sensor_uid: bytes, i1: int, i2: int, i3: int, i4: int
) -> list[int]:
    return [
        (_word(sensor_uid[5], sensor_uid[4]) + i1) & 0xFFFF,
        (_word(sensor_uid[3], sensor_uid[2]) + i2) & 0xFFFF,
        (_word(sensor_uid[1], sensor_uid[0]) + i3 + _KEY[2]) & 0xFFFF,
        (i4 + _KEY[3]) & 0xFFFF,
    ]


def _op(value: int) -> int:
    result = value >> 2
    if value & 1:
        result ^= _KEY[1]
    if value & 2:
        result ^= _KEY[0]
    return result


def _process_crypto(words: Sequence[int]) -> list[int]:
    r0 = _op(words[0]) ^ words[3]
    r1 = _op(r0) ^ words[2]
    r2 = _op(r1) ^ words[1]
    r3 = _op(r2) ^ words[0]
    r4 = _op(r3)
    r5 = _op(r4 ^ r0)
    r6 = _op(r5 ^ r1)
    r7 = _op(r6 ^ r2)

    return [r3 ^ r7, r2 ^ r6, r1 ^ r5, r0 ^ r4]


def _command_block(sensor_uid: bytes, x: int, y: int) -> bytes:
    """Derive the 4 bytes argument of a sensor command (activate, enable)."""
    block_key = _process_crypto(_prepare_variables(sensor_uid, x, y))
    return _split_words((block_key[0] ^ 0x4163, block_key[1] ^ 0x4344))


def _fram_block_argument(
    sensor_type: common.SensorType, patch_info: bytes, block: int
) -> int:
    if sensor_type == common.SensorType.LIBRE_US_14DAY:
        # Header and footer are encrypted with a fixed value.
        if block < 3 or block >= 40:
            return 0xCADC
        return _word(patch_info[5], patch_info[4])

    if sensor_type == common.SensorType.LIBRE2:
        return _word(patch_info[5], patch_info[4]) ^ 0x44

    raise exceptions.UnsupportedSensor(sensor_type.value)


def decrypt_fram(sensor_uid: bytes, patch_info: bytes, fram: bytes) -> bytes:
    """Decrypt the FRAM dump read over NFC.

    Args:
      sensor_uid: UID of the sensor, as read over NFC.
      patch_info: patch information of the sensor, as read over NFC.
      fram: the 344 bytes of encrypted FRAM.

    Returns:
      The plaintext FRAM, of the same length as the input.

    The transform is its own inverse: applying it to the plaintext returns the
    encrypted FRAM.
    """
    _check_identity(sensor_uid, patch_info)
    if len(fram) != FRAM_SIZE:
        raise exceptions.InvalidPacketLength(FRAM_SIZE, len(fram))

    sensor_type = common.SensorType.from_patch_info(patch_info)

    result = bytearray()
    for block in range(_FRAM_BLOCK_COUNT):
        block_key = _split_words(
            _process_crypto(
                _prepare_variables(
                    sensor_uid,
                    block,
                    _fram_block_argument(sensor_type, patch_info, block),
                )
            )
        )
        offset = block * _FRAM_BLOCK_SIZE
        result.extend(
            value ^ key
            for value, key in zip(fram[offset : offset + _FRAM_BLOCK_SIZE], block_key)
        )

    return bytes(result)


encrypt_fram = decrypt_fram


def _parse_fram(fram: bytes) -> construct.Container:
    if len(fram) != FRAM_SIZE:
        raise exceptions.InvalidPacketLength(FRAM_SIZE, len(fram))

    return _FRAM.parse(fram)


def read_calibration(fram: bytes) -> common.SensorCalibration:
    """Extract the factory calibration from the decrypted FRAM."""
    parsed = _parse_fram(fram)

    i3 = parsed.calibration.i3
    if parsed.calibration.i3_negative:
        i3 = -i3

    return common.SensorCalibration(
        i1=parsed.factory.i1,
        i2=parsed.factory.i2,
        i3=i3,
        i4=parsed.calibration.i4,
        i5=parsed.calibration.i5 << 2,
        i6=parsed.calibration.i6 << 2,
    )


def read_state(fram: bytes) -> common.SensorState:
    """Extract the lifecycle state from the decrypted FRAM."""
    return common.SensorState.from_byte(_parse_fram(fram).state)


def streaming_unlock_payload(
    sensor_uid: bytes,
    patch_info: bytes,
    enable_time: int = DEFAULT_ENABLE_TIME,
    unlock_count: int = 0,
) -> bytes:
    """Build the command that enables BLE streaming on the sensor.

    Args:
      sensor_uid: UID of the sensor, as read over NFC.
      patch_info: patch information of the sensor, as read over NFC.
      enable_time: the time sent with the enable streaming command over NFC.
      unlock_count: the number of unlock attempts, including this one.

    Returns:
      The 20 bytes to write to the sensor's write characteristic.
    """
    _check_identity(sensor_uid, patch_info)

    time = ((enable_time + unlock_count) & 0xFFFFFFFF).to_bytes(4, "little")

    # Replay the arguments of the activate and enable NFC commands.
    activate = _command_block(sensor_uid, 0x1B, 0x1B6A)
    enable = _command_block(
        sensor_uid,
        0x1E,
        (enable_time & 0xFFFF) ^ _word(patch_info[5], patch_info[4]),
    )

    t2 = _process_crypto(
        _prepare_variables2(
            sensor_uid,
            _word(enable[1], enable[0]) ^ _word(time[3], time[2]),
            _word(activate[1], activate[0]),
            _word(enable[3], enable[2]) ^ _word(time[1], time[0]),
            _word(activate[3], activate[2]),
        )
    )
    t2_bytes = _split_words(t2)

    t3 = (
        crc16(b"\xc1\xc4\xc3\xc0\xd4\xe1\xe7\xba" + t2_bytes[0:2]),
        crc16(t2_bytes[2:8]),
        crc16(activate + enable[0:2]),
        crc16(enable[2:4] + time),
    )
    # The checksums are used byte-swapped as the next round's input.
    t4 = _process_crypto(
        _prepare_variables2(
            sensor_uid, *(((crc & 0xFF) << 8) | (crc >> 8) for crc in t3)
        )
    )

    payload = time + activate + enable + _split_words(t4)
    logging.debug(
        "unlock payload for count %d: %s", unlock_count, binascii.hexlify(payload)
    )
    return payload


def _ble_key_stream(sensor_uid: bytes, nonce: bytes) -> bytes:
    activate = _command_block(sensor_uid, 0x1B, 0x1B6A)
    x = (_word(activate[1], activate[0]) ^ _word(activate[3], activate[2])) | 0x63
    y = _word(nonce[1], nonce[0]) ^ 0x63

    key = bytearray()
    block_key = _process_crypto(_prepare_variables(sensor_uid, x, y))
    for _ in range(8):
        key.extend(_split_words(block_key))
        block_key = _process_crypto(block_key)

    return bytes(key)


def decrypt_ble_packet(sensor_uid: bytes, packet: bytes) -> bytes:
    """Decrypt a reassembled BLE packet.

    The first two bytes of the packet are sent in clear, and seed the key
    stream used for the remaining 44 bytes.

    Returns:
      The 44 bytes of plaintext, checksum included.
    """
    _check_identity(sensor_uid)
    if len(packet) != BLE_PACKET_SIZE:
        raise exceptions.InvalidPacketLength(BLE_PACKET_SIZE, len(packet))

    key = _ble_key_stream(sensor_uid, packet[0:2])
    return bytes(value ^ key[i] for i, value in enumerate(packet[2:]))


def encrypt_ble_packet(sensor_uid: bytes, payload: bytes, nonce: bytes) -> bytes:
    """Build the BLE packet a sensor would send for the given payload.

    Args:
      sensor_uid: UID of the sensor.
      payload: the 42 bytes of samples and wear time, without checksum.
      nonce: the two cleartext bytes that seed the key stream.
    """
    _check_identity(sensor_uid)
    if len(payload) != BLE_PLAINTEXT_SIZE - 2:
        raise exceptions.InvalidPacketLength(BLE_PLAINTEXT_SIZE - 2, len(payload))
    if len(nonce) != 2:
        raise exceptions.InvalidPacketLength(2, len(nonce))

    plaintext = bytes(payload) + crc16(payload).to_bytes(2, "big")
    key = _ble_key_stream(sensor_uid, nonce)
    return bytes(nonce) + bytes(value ^ key[i] for i, value in enumerate(plaintext))


def _sensor_temperature(
    thermistor: int, calibration: common.SensorCalibration
) -> Optional[float]:
    """Convert the thermistor reading to Celsius degrees, if possible."""
    if thermistor <= 0 or calibration.i6 <= thermistor:
        return None

    resistance = (thermistor * 72500.0) / (calibration.i6 - thermistor) - 1000.0
    if resistance <= 0:
        return None

    log_r = math.log(resistance)
    d = (
        0.0009180023
        + 0.0001964561 * log_r
        + 0.0000007061775 * log_r**2
        + 0.00000005283566 * log_r**3
    )
    return 1 / d - 273.15


def calibrate(
    raw_glucose: int,
    raw_temperature: int,
    temperature_adjustment: int,
    calibration: common.SensorCalibration,
) -> float:
    """Convert raw glucose counts into mg/dL using the factory calibration.

    The counts are mapped linearly through the i3/i4 reference points, then
    compensated for the sensor temperature when the thermistor reading is
    usable.
    """
    if calibration.i4 == calibration.i3:
        return float(raw_glucose)

    value = 65.0 * (raw_glucose - calibration.i3) / (calibration.i4 - calibration.i3)

    temperature = _sensor_temperature(
        raw_temperature + temperature_adjustment, calibration
    )
    if temperature is not None:
        value *= 1.045 ** (32.5 - temperature)

    return round(max(value, 0.0), 1)


@attr.s(auto_attribs=True, frozen=True)
class Libre2Measurements:
    checksum: int
    wear_time_minutes: int
    trend: Sequence[common.SensorMeasurement]
    history: Sequence[common.SensorMeasurement]


def _with_trend(
    measurements: Sequence[common.SensorMeasurement],
) -> tuple[common.SensorMeasurement, ...]:
    result: list[common.SensorMeasurement] = []
    previous: Optional[common.SensorMeasurement] = None
    for measurement in measurements:
        measurement = attr.evolve(
            measurement, trend=common.calculate_trend(measurement, previous)
        )
        result.append(measurement)
        previous = measurement

    return tuple(result)


def parse_measurements(
    plaintext: bytes,
    calibration: common.SensorCalibration,
    now: Optional[datetime.datetime] = None,
) -> Libre2Measurements:
    """Parse the decrypted content of a BLE packet.

    Args:
      plaintext: the 44 bytes returned by decrypt_ble_packet().
      calibration: the factory calibration of the sensor.
      now: the time the packet was received, defaults to the current time.

    Returns:
      The trend and history measurements, both in chronological order.
    """
    if len(plaintext) != BLE_PLAINTEXT_SIZE:
        raise exceptions.InvalidPacketLength(BLE_PLAINTEXT_SIZE, len(plaintext))

    wire_checksum = int.from_bytes(plaintext[42:44], "big")
    calculated_checksum = crc16(plaintext[:42])
    if wire_checksum != calculated_checksum:
        raise exceptions.InvalidChecksum(wire_checksum, calculated_checksum)

    if now is None:
        now = datetime.datetime.now()

    payload = _BLE_PAYLOAD.parse(plaintext[:42])
    wear_time = payload.wear_time_minutes

    trend = []
    history = []
    for index, sample in enumerate(payload.samples):
        if index < len(_TREND_OFFSETS):
            minute_counter = wear_time - _TREND_OFFSETS[index]
        else:
            minute_counter = (
                (wear_time - _HISTORY_DELAY) // _HISTORY_INTERVAL
            ) * _HISTORY_INTERVAL - _HISTORY_INTERVAL * (index - len(_TREND_OFFSETS))

        raw_temperature = sample.raw_temperature << 2
        temperature_adjustment = sample.temperature_adjustment << 2
        if sample.negative_adjustment:
            temperature_adjustment = -temperature_adjustment

        measurement = common.SensorMeasurement(
            minute_counter=minute_counter,
            timestamp=now - datetime.timedelta(minutes=wear_time - minute_counter),
            raw_glucose=sample.raw_glucose,
            raw_temperature=raw_temperature,
            temperature_adjustment=temperature_adjustment,
            value=calibrate(
                sample.raw_glucose, raw_temperature, temperature_adjustment, calibration
            ),
        )

        if index < len(_TREND_OFFSETS):
            trend.append(measurement)
        else:
            history.append(measurement)

    # The sensor sends the most recent samples first.
    return Libre2Measurements(
        checksum=wire_checksum,
        wear_time_minutes=wear_time,
        trend=_with_trend(list(reversed(trend))),
        history=_with_trend(list(reversed(history))),
    )
