"""Platform audio access: input-device enumeration and raw capture lines."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Union

from ..errors import DeviceUnavailable
from .types import AudioDevice, CHANNELS, SAMPLE_RATE

LOGGER = logging.getLogger("chronicle.devices")

DeviceId = Union[int, str]


class InputLine(ABC):
    """An open capture line producing PCM16LE bytes."""

    @abstractmethod
    def read(self, frames: int) -> bytes:
        """Block until ``frames`` frames are available and return them."""

    @abstractmethod
    def close(self) -> None:
        pass


class DeviceBackend(ABC):
    @abstractmethod
    def list_input_devices(self) -> List[AudioDevice]:
        pass

    @abstractmethod
    def open_input(self, device: Optional[int], frames_per_block: int) -> InputLine:
        """Open ``device`` (``None`` = system default) at 16 kHz mono int16."""

    def resolve(self, device_id: Optional[DeviceId]) -> Optional[int]:
        """Map an index or exact device name onto an index, ``None`` if unknown."""

        if device_id is None:
            return None
        devices = self.list_input_devices()
        index: Optional[int] = None
        if isinstance(device_id, int) or (isinstance(device_id, str) and device_id.isdigit()):
            index = int(device_id)
            if any(device.index == index for device in devices):
                return index
        for device in devices:
            if device.name == device_id:
                return device.index
        LOGGER.warning("Audio device %r not found; using default input", device_id)
        return None


class SoundDeviceLine(InputLine):
    def __init__(self, stream) -> None:
        self._stream = stream

    def read(self, frames: int) -> bytes:
        data, overflowed = self._stream.read(frames)
        if overflowed:
            LOGGER.debug("Input overflow while reading %d frames", frames)
        return bytes(data)

    def close(self) -> None:
        try:
            self._stream.stop()
        finally:
            self._stream.close()


class SoundDeviceBackend(DeviceBackend):
    """PortAudio-backed devices through ``sounddevice``."""

    def __init__(self) -> None:
        self._sd = self._try_import_sounddevice()

    def _try_import_sounddevice(self):
        try:
            import sounddevice as sd  # type: ignore

            return sd
        except Exception as exc:  # PortAudio missing raises OSError on import
            LOGGER.warning("sounddevice unavailable: %s", exc)
            return None

    def list_input_devices(self) -> List[AudioDevice]:
        if self._sd is None:
            return []
        try:
            devices = self._sd.query_devices()
        except Exception as exc:
            LOGGER.warning("Could not enumerate audio devices: %s", exc)
            return []
        found: List[AudioDevice] = []
        for idx, info in enumerate(devices):
            try:
                max_inputs = int(info.get("max_input_channels", 0))
                if max_inputs < CHANNELS:
                    continue
                self._sd.check_input_settings(
                    device=idx, channels=CHANNELS, dtype="int16", samplerate=SAMPLE_RATE
                )
                hostapi = self._sd.query_hostapis(info.get("hostapi", 0))
                found.append(
                    AudioDevice(
                        index=idx,
                        name=str(info.get("name") or idx),
                        description=str(hostapi.get("name") or ""),
                        max_input_channels=max_inputs,
                    )
                )
            except Exception as exc:
                LOGGER.debug("Skipping audio device %s: %s", idx, exc)
        return found

    def open_input(self, device: Optional[int], frames_per_block: int) -> InputLine:
        if self._sd is None:
            raise DeviceUnavailable("sounddevice/PortAudio is not available")
        try:
            stream = self._sd.RawInputStream(
                samplerate=SAMPLE_RATE,
                channels=CHANNELS,
                dtype="int16",
                device=device,
                blocksize=frames_per_block,
            )
            stream.start()
        except Exception as exc:
            raise DeviceUnavailable(f"Audio line unavailable: {exc}") from exc
        return SoundDeviceLine(stream)


__all__ = ["DeviceBackend", "InputLine", "SoundDeviceBackend", "SoundDeviceLine", "DeviceId"]
