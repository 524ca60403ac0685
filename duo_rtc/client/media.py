"""Local media acquisition and remote media sinks."""

import logging
from typing import Dict, List, Optional

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.mediastreams import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack

logger = logging.getLogger(__name__)


class LocalMedia:
    """Tracks sent to the remote peer.

    With a ``source`` (file, device or URL understood by FFmpeg) the tracks come
    from an aiortc MediaPlayer; otherwise a synthetic silent audio track and a
    blank video track are used.

    Args:
        source: Optional media source for MediaPlayer.
        media_format: Optional FFmpeg input format (e.g. ``v4l2``, ``avfoundation``).
        options: Optional FFmpeg input options.
    """

    def __init__(
        self,
        source: Optional[str] = None,
        media_format: Optional[str] = None,
        options: Optional[Dict[str, str]] = None,
    ):
        self.source = source
        self.media_format = media_format
        self.options = options or {}
        self._player: Optional[MediaPlayer] = None
        self.tracks: List[MediaStreamTrack] = []

    def open(self) -> List[MediaStreamTrack]:
        """Acquire the local tracks. Calling it again returns the same tracks."""
        if self.tracks:
            return self.tracks

        if self.source:
            self._player = MediaPlayer(
                self.source, format=self.media_format, options=self.options
            )
            self.tracks = [t for t in (self._player.audio, self._player.video) if t is not None]
            logger.info(f"Opened media source {self.source} ({len(self.tracks)} track(s))")
        else:
            self.tracks = [AudioStreamTrack(), VideoStreamTrack()]
            logger.info("Using synthetic audio/video tracks")

        return self.tracks

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()
        self.tracks = []
        self._player = None


class RemoteSink:
    """Consumes the inbound stream once it is attached.

    Records to ``record_path`` when given, otherwise discards frames.
    """

    def __init__(self, record_path: Optional[str] = None):
        self.record_path = record_path
        self._sink = MediaRecorder(record_path) if record_path else MediaBlackhole()
        self._started = False

    async def attach(self, stream) -> None:
        """Start consuming every track of an InboundStream."""
        if self._started:
            return
        for track in stream.tracks:
            self._sink.addTrack(track)
        await self._sink.start()
        self._started = True
        target = self.record_path or "blackhole"
        logger.info(f"Consuming {len(stream.tracks)} inbound track(s) into {target}")

    async def stop(self) -> None:
        if self._started:
            await self._sink.stop()
            self._started = False
