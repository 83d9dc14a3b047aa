# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Common routines and data types for Libre sensors."""

import binascii
import datetime
import enum
import textwrap
from collections.abc import Sequence
from typing import Optional

import attr


class Unit(enum.Enum):
    MG_DL = "mg/dL"
    MMOL_L = "mmol/L"


def convert_glucose_unit(value: float, from_unit: Unit, to_unit: Unit) -> float:
    """Convert the given value of glucose level between units.

    Args:
      value: The value of glucose in the current unit
      from_unit: The unit value is currently expressed in
      to_unit: The unit to conver the value to: the other if empty.

    Returns:
      The converted representation of the blood glucose level.
    """
    from_unit = Unit(from_unit)
    to_unit = Unit(to_unit)

    if from_unit == to_unit:
        return value

    if from_unit == Unit.MG_DL:
        return round(value / 18.0, 2)

    return round(value * 18.0, 1)


class SensorType(enum.Enum):
    LIBRE1 = "Libre 1"
    LIBRE_US_14DAY = "Libre US 14d"
    LIBRE_PRO_H = "Libre Pro/H"
    LIBRE2 = "Libre 2"
    LIBRE2_US = "Libre 2 US"
    LIBRE2_CA = "Libre 2 CA"
    LIBRE_SENSE = "Libre Sense"
    UNKNOWN = "Unknown"

    @classmethod
    def from_patch_info(cls, patch_info: bytes) -> "SensorType":
        if not patch_info:
            return cls.UNKNOWN

        family = patch_info[0]
        if family in (0xDF, 0xA2):
            return cls.LIBRE1
        if family in (0xE5, 0xE6):
            return cls.LIBRE_US_14DAY
        if family == 0x70:
            return cls.LIBRE_PRO_H
        if family in (0x9D, 0xC5):
            return cls.LIBRE2
        if family == 0x76:
            # The same family byte is shared, the region tells them apart.
            if len(patch_info) > 3 and patch_info[3] == 0x02:
                return cls.LIBRE2_US
            if len(patch_info) > 3 and patch_info[3] == 0x04:
                return cls.LIBRE2_CA
            return cls.LIBRE_SENSE

        return cls.UNKNOWN


class SensorRegion(enum.Enum):
    EUROPEAN = 1
    USA = 2
    AUSTRALIAN_CANADIAN = 4
    EASTERN_ROW = 8
    UNKNOWN = 0

    @classmethod
    def from_patch_info(cls, patch_info: bytes) -> "SensorRegion":
        if len(patch_info) < 4:
            return cls.UNKNOWN

        try:
            return cls(patch_info[3])
        except ValueError:
            return cls.UNKNOWN


class SensorState(enum.Enum):
    NOT_STARTED = 0x01
    STARTING = 0x02
    READY = 0x03
    EXPIRED = 0x04
    SHUTDOWN = 0x05
    FAILURE = 0x06
    UNKNOWN = 0x00

    @classmethod
    def from_byte(cls, value: int) -> "SensorState":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class ConnectionState(enum.Enum):
    UNASSIGNED = "Unassigned"
    POWER_OFF = "Power off"
    SCANNING = "Scanning"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    NOTIFYING = "Notifying"


class Trend(enum.Enum):
    RISING_QUICKLY = "rising quickly"
    RISING = "rising"
    FLAT = "flat"
    FALLING = "falling"
    FALLING_QUICKLY = "falling quickly"
    UNKNOWN = "unknown"


# Rate of change thresholds, in mg/dL per minute.
_TREND_QUICK_RATE = 2.0
_TREND_RATE = 1.0


class ExpiryWarning(enum.Enum):
    """Wear time milestones of a 14 days sensor, in minutes."""

    THREE_DAYS = 15840
    TWO_DAYS = 17280
    ONE_DAY = 18720
    TWELVE_HOURS = 19440
    ONE_HOUR = 20100
    EXPIRED = 20160


def expiry_warning(
    wear_time_minutes: int, last_wear_time_minutes: Optional[int]
) -> Optional[ExpiryWarning]:
    """Return the milestone crossed since the last seen wear time, if any.

    Only the most advanced milestone is returned, so a sensor seen for the first
    time when already expired does not report all the earlier ones.
    """
    last = last_wear_time_minutes or 0
    for warning in sorted(ExpiryWarning, key=lambda w: w.value, reverse=True):
        if wear_time_minutes >= warning.value:
            if last < warning.value:
                return warning
            return None

    return None


@attr.s(auto_attribs=True, frozen=True)
class SensorIdentity:
    sensor_uid: bytes
    patch_info: bytes

    @property
    def sensor_type(self) -> SensorType:
        return SensorType.from_patch_info(self.patch_info)

    @property
    def region(self) -> SensorRegion:
        return SensorRegion.from_patch_info(self.patch_info)


@attr.s(auto_attribs=True, frozen=True)
class SensorCalibration:
    """Factory calibration of the sensor, as read from its FRAM.

    Attributes:
      i1: 3 bits, unused by the conversion.
      i2: 10 bits, index into the factory tables.
      i3: signed offset of the raw glucose counts.
      i4: raw glucose counts at the reference point.
      i5: thermistor reference, multiple of 4.
      i6: thermistor divider resistance, multiple of 4.
    """

    i1: int
    i2: int
    i3: int
    i4: int
    i5: int
    i6: int

    def __str__(self) -> str:
        return (
            f"i1: {self.i1}, i2: {self.i2}, i3: {self.i3}, "
            f"i4: {self.i4}, i5: {self.i5}, i6: {self.i6}"
        )


@attr.s(auto_attribs=True, frozen=True)
class SensorMeasurement:
    minute_counter: int
    timestamp: datetime.datetime
    raw_glucose: int
    raw_temperature: int
    temperature_adjustment: int
    value: float
    trend: Trend = attr.ib(default=Trend.UNKNOWN, validator=attr.validators.in_(Trend))

    def get_value_as(self, to_unit: Unit) -> float:
        """Returns the calibrated value as the given unit.

        Args:
          to_unit: The unit to return the value to.
        """
        return convert_glucose_unit(self.value, Unit.MG_DL, to_unit)

    def as_csv(self, unit: Unit) -> str:
        """Returns the measurement as a formatted comma-separated value string."""
        return '"%s","%.2f","%s","%d"' % (
            self.timestamp,
            self.get_value_as(unit),
            self.trend.value,
            self.raw_glucose,
        )


def calculate_trend(
    current: SensorMeasurement, previous: Optional[SensorMeasurement]
) -> Trend:
    """Classify the rate of change between two consecutive measurements."""
    if previous is None:
        return Trend.UNKNOWN

    minutes = current.minute_counter - previous.minute_counter
    if minutes <= 0:
        return Trend.UNKNOWN

    rate = (current.value - previous.value) / minutes
    if rate >= _TREND_QUICK_RATE:
        return Trend.RISING_QUICKLY
    if rate >= _TREND_RATE:
        return Trend.RISING
    if rate <= -_TREND_QUICK_RATE:
        return Trend.FALLING_QUICKLY
    if rate <= -_TREND_RATE:
        return Trend.FALLING

    return Trend.FLAT


@attr.s(auto_attribs=True, frozen=True)
class SensorData:
    """Snapshot of one decoded BLE packet.

    Attributes:
      plaintext: The decrypted bytes of the packet.
      sensor_uid: UID of the sensor that sent the packet.
      patch_info: Patch information of the sensor.
      calibration: Factory calibration used to convert the values.
      wear_time_minutes: Minutes since the sensor was started.
      trend: Recent measurements, in chronological order.
      history: Measurements on the 15 minutes grid, in chronological order.
    """

    plaintext: bytes
    sensor_uid: bytes
    patch_info: bytes
    calibration: SensorCalibration
    wear_time_minutes: int
    trend: Sequence[SensorMeasurement] = ()
    history: Sequence[SensorMeasurement] = ()

    @property
    def latest(self) -> Optional[SensorMeasurement]:
        if not self.trend:
            return None
        return self.trend[-1]

    def __str__(self) -> str:
        latest = self.latest
        latest_string = "N/A"
        if latest is not None:
            latest_string = f"{latest.value:.0f} mg/dL ({latest.trend.value})"

        return textwrap.dedent(
            f"""\
            Sensor UID: {binascii.hexlify(self.sensor_uid).decode("ascii")}
            Wear Time: {self.wear_time_minutes} minutes
            Latest: {latest_string}
        """
        )
