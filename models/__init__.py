"""Models package."""

from .device_setting import DeviceSetting
