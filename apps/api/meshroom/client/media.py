"""Local media acquisition and outgoing track replacement."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Protocol

from aiortc.contrib.media import MediaPlayer, MediaRelay

from .negotiator import SessionNegotiator
from .presets import DEFAULT_PRESET, QualityPreset, get_preset

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("audio", "video")


class MediaAcquisitionError(RuntimeError):
    """Local capture devices could not be opened."""


@dataclass(frozen=True, slots=True)
class DeviceSelection:
    video_device: str | None = None
    audio_device: str | None = None


class LocalMedia:
    """Tracks captured from the local devices.

    ``fanout`` turns a source track into the track one peer connection sends,
    so each session gets its own consumer of the same capture.
    """

    def __init__(
        self,
        tracks: dict[str, Any],
        *,
        devices: DeviceSelection,
        preset: QualityPreset,
        fanout: Callable[[Any], Any] | None = None,
    ) -> None:
        self.tracks = {kind: track for kind, track in tracks.items() if track is not None}
        self.devices = devices
        self.preset = preset
        self._fanout = fanout
        self.released = False

    def peer_track(self, kind: str) -> Any | None:
        track = self.tracks.get(kind)
        if track is None or self._fanout is None:
            return track
        return self._fanout(track)

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        for kind, track in self.tracks.items():
            try:
                track.stop()
            except Exception:  # noqa: BLE001 - stopping is best effort
                logger.exception("Stopping local %s track failed", kind)


class MediaSource(Protocol):
    async def acquire(self, devices: DeviceSelection, preset: QualityPreset) -> LocalMedia: ...


class MediaController:
    """Own the local media and push changes to every live peer session."""

    def __init__(
        self,
        source: MediaSource,
        sessions: Callable[[], Iterable[SessionNegotiator]],
        *,
        quality: str = DEFAULT_PRESET,
        devices: DeviceSelection | None = None,
    ) -> None:
        self._source = source
        self._sessions = sessions
        self._preset = get_preset(quality)
        self._devices = devices or DeviceSelection()
        self._enabled = {kind: True for kind in MEDIA_KINDS}
        self._pending: asyncio.Task[LocalMedia] | None = None
        self.current: LocalMedia | None = None
        self.failures: dict[str, BaseException] = {}

    @property
    def preset(self) -> QualityPreset:
        return self._preset

    @property
    def devices(self) -> DeviceSelection:
        return self._devices

    def is_enabled(self, kind: str) -> bool:
        return self._enabled[kind]

    def peer_tracks(self) -> dict[str, Any]:
        """Tracks a new peer session should send."""

        tracks: dict[str, Any] = {}
        for kind in MEDIA_KINDS:
            track = None
            if self.current is not None and self._enabled[kind]:
                track = self.current.peer_track(kind)
            tracks[kind] = track
        return tracks

    async def start(self) -> LocalMedia | None:
        return await self._switch(self._devices, self._preset)

    async def change_devices(
        self,
        *,
        video_device: str | None = None,
        audio_device: str | None = None,
    ) -> LocalMedia | None:
        devices = replace(
            self._devices,
            video_device=video_device if video_device is not None else self._devices.video_device,
            audio_device=audio_device if audio_device is not None else self._devices.audio_device,
        )
        return await self._switch(devices, self._preset)

    async def change_quality(self, name: str) -> LocalMedia | None:
        return await self._switch(self._devices, get_preset(name))

    async def set_enabled(self, kind: str, enabled: bool) -> None:
        """Mute or unmute one media kind on every session without renegotiating."""

        if kind not in self._enabled:
            raise ValueError(f"Unknown media kind {kind!r}")
        self._enabled[kind] = enabled
        await self._replace_everywhere((kind,))

    async def stop(self) -> None:
        """Cancel any acquisition in flight and release the local tracks."""

        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()
        current, self.current = self.current, None
        if current is not None:
            current.release()

    async def _switch(self, devices: DeviceSelection, preset: QualityPreset) -> LocalMedia | None:
        """Acquire new media and make it current.

        A newer request cancels this one; the superseded caller gets ``None``.
        """

        if self._pending is not None and not self._pending.done():
            logger.info("Superseding in-flight media acquisition")
            self._pending.cancel()

        task = asyncio.ensure_future(self._source.acquire(devices, preset))
        self._pending = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task.cancelled():
            return None
        if self._pending is task:
            self._pending = None

        exc = task.exception()
        if exc is not None:
            if isinstance(exc, MediaAcquisitionError):
                raise exc
            raise MediaAcquisitionError(f"Could not open local media: {exc}") from exc

        media = task.result()
        previous, self.current = self.current, media
        self._devices = devices
        self._preset = preset
        await self._replace_everywhere(MEDIA_KINDS)
        if previous is not None:
            previous.release()
        logger.info(
            "Local media ready: %s at %s (video=%s audio=%s)",
            ", ".join(sorted(media.tracks)) or "no tracks",
            preset.name,
            devices.video_device,
            devices.audio_device,
        )
        return media

    async def _replace_everywhere(self, kinds: Iterable[str]) -> dict[str, BaseException]:
        """Replace outgoing tracks on all sessions independently of each other."""

        kinds = tuple(kinds)
        sessions = list(self._sessions())
        if not sessions:
            self.failures = {}
            return self.failures

        def tracks_for_peer() -> dict[str, Any]:
            tracks = self.peer_tracks()
            return {kind: tracks[kind] for kind in kinds}

        results = await asyncio.gather(
            *(session.replace_tracks(tracks_for_peer(), self._preset) for session in sessions),
            return_exceptions=True,
        )

        failures: dict[str, BaseException] = {}
        replaced: list[SessionNegotiator] = []
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                logger.warning("Track replacement for %s failed: %s", session.remote_id, result)
                failures[session.remote_id] = result
            else:
                replaced.append(session)

        hint = {"kinds": list(kinds), "quality": self._preset.name}
        await asyncio.gather(*(session.send_hint(hint) for session in replaced), return_exceptions=True)
        self.failures = failures
        return failures


class AiortcMediaSource:
    """Capture local devices with aiortc's ``MediaPlayer``.

    Opening a device blocks, so it runs in a worker thread; a cancelled
    acquisition releases whatever the thread opened once it finishes.
    """

    def __init__(self, *, video_format: str = "v4l2", audio_format: str = "pulse") -> None:
        self._video_format = video_format
        self._audio_format = audio_format

    async def acquire(self, devices: DeviceSelection, preset: QualityPreset) -> LocalMedia:
        opening = asyncio.ensure_future(asyncio.to_thread(self._open, devices, preset))
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(_release_abandoned)
            raise

    def _open(self, devices: DeviceSelection, preset: QualityPreset) -> LocalMedia:
        tracks: dict[str, Any] = {}
        try:
            if devices.video_device:
                video = MediaPlayer(
                    devices.video_device,
                    format=self._video_format,
                    options={"framerate": str(preset.frame_rate), "video_size": preset.video_size},
                )
                tracks["video"] = video.video
            if devices.audio_device:
                audio = MediaPlayer(devices.audio_device, format=self._audio_format)
                tracks["audio"] = audio.audio
        except Exception as exc:  # noqa: BLE001 - av raises a family of OS and codec errors
            for track in tracks.values():
                track.stop()
            raise MediaAcquisitionError(f"Could not open capture device: {exc}") from exc

        relay = MediaRelay()
        return LocalMedia(tracks, devices=devices, preset=preset, fanout=relay.subscribe)


def _release_abandoned(opening: asyncio.Future) -> None:
    if opening.cancelled() or opening.exception() is not None:
        return
    opening.result().release()
